"""Relay endpoint — POST /relay → normalized SSE stream."""

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from cardrelay.config import Settings, get_settings
from cardrelay.relay import RelaySession
from cardrelay.sse_bridge import CORS_HEADERS
from cardrelay.upstream import CompletionClient

router = APIRouter()


def get_relay_session(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RelaySession:
    state = request.app.state
    return RelaySession(
        settings,
        CompletionClient(state.http_client, settings),
        state.context_fetcher,
    )


@router.options("/relay")
async def relay_preflight() -> Response:
    return Response(
        status_code=204,
        headers={**CORS_HEADERS, "Access-Control-Allow-Methods": "POST, OPTIONS"},
    )


@router.post("/relay")
async def relay(
    request: Request,
    session: RelaySession = Depends(get_relay_session),
) -> Response:
    """Relay one chat turn to the completion API.

    Events emitted: ready, chunk*, then done or error (info in debug mode).
    Failures before the stream opens answer 400/500 JSON instead.
    """
    return await session.handle(await request.body())
