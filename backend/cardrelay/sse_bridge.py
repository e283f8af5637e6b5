"""SSE bridge — translates normalized relay events to ServerSentEvent objects.

This module sits between the relay session and the HTTP response.
It never needs to change regardless of what produces the events.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping
from contextlib import aclosing
from typing import Any

from sse_starlette.sse import EventSourceResponse, ServerSentEvent
from starlette.types import Receive, Scope, Send

from cardrelay.codec import FRAME_SEPARATOR, to_server_sent_event
from cardrelay.models import OutboundEvent

CORS_HEADERS: Mapping[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "content-type",
}

STREAM_HEADERS: Mapping[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    **CORS_HEADERS,
}

# relay bodies hold only data frames; the hard timeout ends a stream first
PING_INTERVAL_SECONDS = 3600


async def stream_sse_events(
    event_source: AsyncGenerator[OutboundEvent, None],
) -> AsyncGenerator[ServerSentEvent, None]:
    """Convert relay events to SSE records.

    Args:
        event_source: Async generator from RelaySession (the relay stream
            or the debug report) yielding OutboundEvent models. It is
            closed when this generator is, so a dropped client still
            releases the upstream connection.

    Yields:
        ServerSentEvent objects ready for EventSourceResponse.
    """
    async with aclosing(event_source) as events:
        async for event in events:
            yield to_server_sent_event(event)


class RelayEventSourceResponse(EventSourceResponse):
    """EventSourceResponse with a finaliser that runs however the response ends.

    ``on_close`` is awaited even when the body is never iterated, e.g. the
    client is gone before the response start is sent.
    """

    def __init__(
        self,
        content: AsyncGenerator[ServerSentEvent, None],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self._on_close is not None:
                await self._on_close()


def event_stream_response(
    event_source: AsyncGenerator[OutboundEvent, None],
    on_close: Callable[[], Awaitable[None]] | None = None,
) -> RelayEventSourceResponse:
    return RelayEventSourceResponse(
        stream_sse_events(event_source),
        on_close=on_close,
        media_type="text/event-stream",
        headers=dict(STREAM_HEADERS),
        sep=FRAME_SEPARATOR,
        ping=PING_INTERVAL_SECONDS,
    )
