"""Relay session — one chat request from validation to the last SSE frame.

Lifecycle: ``validating -> streaming -> closed``. Everything that can fail
before the stream opens raises a RelayError (answered as JSON); once the
``ready`` event is out, the session guarantees exactly one terminal event
(``done`` or ``error``) and nothing after it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Sequence
from typing import Literal

import httpx
from pydantic import ValidationError
from starlette.responses import Response

from cardrelay.codec import UpstreamDecoder
from cardrelay.config import Settings
from cardrelay.errors import (
    ConfigurationError,
    InvalidRequestError,
    RelayError,
    TenantLookupError,
)
from cardrelay.models import (
    BusinessSummary,
    ChatRequest,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    InfoEvent,
    OutboundEvent,
    ReadyEvent,
    StreamUsage,
    TERMINAL_EVENT_TYPES,
)
from cardrelay.sse_bridge import event_stream_response
from cardrelay.tenant_store import ContextFetcher
from cardrelay.upstream import CompletionClient

logger = logging.getLogger(__name__)

SessionState = Literal["validating", "streaming", "closed"]

DEBUG_KB = "kb"
INVALID_PAYLOAD = "Invalid payload. Expect { tenantId, messages[] }."
UPSTREAM_TIMEOUT = "Upstream timeout"
STREAM_INTERRUPTED = "Stream interrupted"

SYSTEM_PROMPT = (
    "You are a concise assistant in a business card app. Keep replies short; "
    "don't invent facts. If booking is requested and a Calendly link exists in "
    "context, include it. Tenant: {tenant_id}."
)


def build_system_message(tenant_id: str) -> dict[str, str]:
    return {"role": "system", "content": SYSTEM_PROMPT.format(tenant_id=tenant_id)}


def parse_chat_request(body: bytes) -> ChatRequest:
    try:
        payload = json.loads(body or b"{}")
    except ValueError as e:
        raise InvalidRequestError("Invalid JSON body") from e
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(INVALID_PAYLOAD) from e


class RelaySession:
    def __init__(
        self,
        settings: Settings,
        completions: CompletionClient,
        fetcher: ContextFetcher,
    ) -> None:
        self._settings = settings
        self._completions = completions
        self._fetcher = fetcher
        self._upstream: httpx.Response | None = None
        self.state: SessionState = "validating"
        self.request: ChatRequest | None = None
        self.usage = StreamUsage()

    @property
    def closed(self) -> bool:
        return self.state == "closed"

    async def handle(self, body: bytes) -> Response:
        """Validate, open the upstream stream, and hand back the SSE response."""
        request = parse_chat_request(body)
        self.request = request

        if request.debug_mode == DEBUG_KB:
            return await self._debug_report(request)

        if not self._settings.upstream_configured:
            raise ConfigurationError("Server not configured: missing OPENAI_API_KEY.")

        messages = [build_system_message(request.tenant_id), *request.upstream_messages()]
        try:
            self._upstream = await self._completions.open_stream(messages)
        except RelayError:
            raise
        except Exception as e:
            logger.exception("Unexpected error opening upstream stream")
            raise RelayError("Unexpected server error", detail=str(e) or None) from e

        return event_stream_response(self.events(), on_close=self._release)

    async def _debug_report(self, request: ChatRequest) -> Response:
        """Tenant store connectivity check. Never calls the completion API."""
        try:
            biz = await self._fetcher.fetch_business(request.tenant_id)
            kb = await self._fetcher.fetch_knowledge(request.tenant_id)
        except Exception as e:
            logger.exception("KB debug lookup failed for tenant=%s", request.tenant_id)
            raise TenantLookupError(detail=str(e) or e.__class__.__name__) from e

        info = InfoEvent(
            message="Admin OK",
            biz=BusinessSummary(name=biz.name, calendly_url=biz.calendly_url) if biz else None,
            kb_count=len(kb),
        )
        return event_stream_response(
            self._replay([ReadyEvent(trace_id=request.trace_id), info, DoneEvent()]),
            on_close=self._release,
        )

    async def _replay(
        self, events: Sequence[OutboundEvent]
    ) -> AsyncGenerator[OutboundEvent, None]:
        self.state = "streaming"
        try:
            for event in events:
                if self.closed:
                    break
                if event.type in TERMINAL_EVENT_TYPES:
                    event = self._close(event)
                yield event
        finally:
            self.state = "closed"

    async def _release(self) -> None:
        """Response finaliser: close the session and the upstream body, if any."""
        self.state = "closed"
        if self._upstream is not None:
            await self._upstream.aclose()

    def _close(self, terminal: OutboundEvent) -> OutboundEvent:
        self.state = "closed"
        logger.info(
            "Relay stream closed with %s (prompt_tokens=%d completion_tokens=%d)",
            terminal.type,
            self.usage.prompt_tokens,
            self.usage.completion_tokens,
        )
        return terminal

    async def events(self) -> AsyncGenerator[OutboundEvent, None]:
        """Normalized event stream for one upstream response.

        ``ready``, then one ``chunk`` per upstream content delta in arrival
        order, then ``done`` (on ``[DONE]`` or end of body) or ``error``
        (hard timeout or unexpected failure).
        """
        upstream = self._upstream
        if upstream is None:
            raise RuntimeError("events() called before the upstream stream was opened")

        self.state = "streaming"
        decoder = UpstreamDecoder()
        self.usage = decoder.usage
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.relay_timeout_seconds
        chunks = upstream.aiter_bytes()
        trace_id = self.request.trace_id if self.request else None
        logger.info("Relay stream opened trace_id=%s", trace_id)

        try:
            yield ReadyEvent(trace_id=trace_id)

            while not self.closed:
                try:
                    data = await asyncio.wait_for(
                        chunks.__anext__(), max(deadline - loop.time(), 0)
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    logger.warning(
                        "Upstream exceeded %ss, aborting", self._settings.relay_timeout_seconds
                    )
                    yield self._close(ErrorEvent(message=UPSTREAM_TIMEOUT))
                    break

                for frame in decoder.feed(data):
                    if frame.done:
                        yield self._close(DoneEvent(usage=self.usage.model_copy()))
                        break
                    if frame.delta:
                        yield ChunkEvent(delta=frame.delta)

            if not self.closed:
                # body ended without [DONE]
                yield self._close(DoneEvent(usage=self.usage.model_copy()))
        except Exception:
            logger.exception("Relay stream failed trace_id=%s", trace_id)
            if not self.closed:
                yield self._close(ErrorEvent(message=STREAM_INTERRUPTED))
        finally:
            self.state = "closed"
            await chunks.aclose()
            await upstream.aclose()
