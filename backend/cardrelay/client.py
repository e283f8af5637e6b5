"""Async client for the relay's normalized SSE stream.

Two ways to consume a reply:

    async with ChatStreamClient("http://localhost:8000") as chat:
        # pull
        async for event in chat.events("acme", messages):
            ...
        # push
        task = chat.send("acme", messages, on_chunk=..., on_done=..., on_error=...)
        await task

At most one request is in flight per client: ``send`` aborts the previous
one, and ``abort()`` discards the partial text on purpose.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from cardrelay.codec import SSELineBuffer
from cardrelay.models import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    OutboundEvent,
    StreamUsage,
    outbound_event_adapter,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str, str], Any]
DoneCallback = Callable[[StreamUsage | None], Any]
ErrorCallback = Callable[[Exception], Any]


class RelayClientError(Exception):
    """Base class for failures surfaced to the caller."""


class InvalidPayloadError(RelayClientError):
    pass


class RelayRequestError(RelayClientError):
    """The relay answered without opening an event stream."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RelayStreamError(RelayClientError):
    """The relay sent an ``error`` event mid-stream."""


def describe_failure(status_code: int, body: str) -> str:
    """Compose a message from a non-stream response body.

    Prefers the structured ``{error, detail}`` shape, then the raw text,
    then just the status.
    """
    message = f"Request failed ({status_code})"
    try:
        data = json.loads(body)
    except ValueError:
        return f"{message}: {body}" if body else message

    if isinstance(data, dict) and data.get("error"):
        message = f"{message}: {data['error']}"
        if data.get("detail"):
            message = f"{message} - {data['detail']}"
    return message


def _normalize_messages(messages: Sequence[Any]) -> list[dict[str, Any]]:
    return [m.model_dump() if hasattr(m, "model_dump") else dict(m) for m in messages]


def _validate(tenant_id: str, messages: Any) -> None:
    if not tenant_id or not isinstance(messages, (list, tuple)):
        raise InvalidPayloadError("Invalid payload: { tenantId, messages[] } required.")


class ChatStreamClient:
    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/relay",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._path = path
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self._active: asyncio.Task | None = None
        self.is_loading = False
        self.text = ""

    async def __aenter__(self) -> ChatStreamClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.abort()
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def events(
        self,
        tenant_id: str,
        messages: Sequence[Any],
        trace_id: str | None = None,
    ) -> AsyncIterator[OutboundEvent]:
        """Yield relay events in order until ``done``.

        Raises RelayRequestError when no event stream was opened and
        RelayStreamError on an ``error`` event. If the stream ends without
        ``done``, a ``DoneEvent`` with no usage is yielded in its place.
        """
        _validate(tenant_id, messages)
        body: dict[str, Any] = {
            "tenantId": tenant_id,
            "messages": _normalize_messages(messages),
        }
        if trace_id is not None:
            body["traceId"] = trace_id

        async with self._http.stream("POST", self._path, json=body) as response:
            content_type = response.headers.get("content-type", "")
            if not response.is_success or not content_type.startswith("text/event-stream"):
                try:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                except httpx.HTTPError:
                    text = ""
                raise RelayRequestError(
                    describe_failure(response.status_code, text),
                    status_code=response.status_code,
                )

            lines = SSELineBuffer()
            async for data in response.aiter_bytes():
                for payload in lines.feed(data):
                    try:
                        event = outbound_event_adapter.validate_json(payload)
                    except ValidationError:
                        continue
                    if isinstance(event, ErrorEvent):
                        raise RelayStreamError(event.message or "Stream error")
                    yield event
                    if isinstance(event, DoneEvent):
                        return

        yield DoneEvent()

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def send(
        self,
        tenant_id: str,
        messages: Sequence[Any],
        *,
        on_chunk: ChunkCallback | None = None,
        on_done: DoneCallback | None = None,
        on_error: ErrorCallback | None = None,
        trace_id: str | None = None,
    ) -> asyncio.Task | None:
        """Start a request and return its task handle.

        Invalid input reports through ``on_error`` right away and returns
        None without touching the network.
        """
        try:
            _validate(tenant_id, messages)
        except InvalidPayloadError as e:
            if on_error:
                on_error(e)
            return None

        self.abort()
        self.is_loading = True
        self.text = ""
        task = asyncio.create_task(
            self._run(tenant_id, messages, trace_id, on_chunk, on_done, on_error)
        )
        self._active = task
        return task

    def abort(self) -> None:
        """Cancel the in-flight request and discard its partial text."""
        if self._active is not None and not self._active.done():
            self._active.cancel()
        self._active = None
        self.is_loading = False
        self.text = ""

    def _finish(self) -> None:
        self.is_loading = False
        if self._active is asyncio.current_task():
            self._active = None

    async def _run(
        self,
        tenant_id: str,
        messages: Sequence[Any],
        trace_id: str | None,
        on_chunk: ChunkCallback | None,
        on_done: DoneCallback | None,
        on_error: ErrorCallback | None,
    ) -> None:
        usage: StreamUsage | None = None
        try:
            async for event in self.events(tenant_id, messages, trace_id):
                if isinstance(event, ChunkEvent):
                    self.text += event.delta
                    if on_chunk:
                        on_chunk(event.delta, self.text)
                elif isinstance(event, DoneEvent):
                    usage = event.usage
        except Exception as e:
            self._finish()
            logger.debug("Relay request failed: %s", e)
            if on_error:
                on_error(e)
            return

        # events() always ends with a DoneEvent; exactly one terminal callback fires
        self._finish()
        if on_done:
            on_done(usage)
