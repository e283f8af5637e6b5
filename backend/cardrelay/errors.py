"""Pre-stream relay errors.

Anything raised before the SSE stream opens is answered with a JSON body
``{"error": ..., "detail"?: ...}``. Once streaming, failures become an
``error`` event instead (see cardrelay.relay).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cardrelay.sse_bridge import CORS_HEADERS

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base error with an HTTP status and a client-facing message."""

    def __init__(self, error: str, status_code: int = 500, detail: Any = None):
        self.error = error
        self.status_code = status_code
        self.detail = detail
        super().__init__(error)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.detail not in (None, ""):
            body["detail"] = self.detail
        return body


class InvalidRequestError(RelayError):
    """Bad JSON or failed payload validation (400)."""

    def __init__(self, error: str, detail: Any = None):
        super().__init__(error, 400, detail)


class ConfigurationError(RelayError):
    """Server misconfiguration, e.g. missing upstream key (500)."""

    def __init__(self, error: str):
        super().__init__(error, 500)


class UpstreamError(RelayError):
    """Upstream call failed before streaming began (500)."""

    def __init__(self, detail: Any = None, error: str = "Upstream error"):
        super().__init__(error, 500, detail)


class TenantLookupError(RelayError):
    """Tenant store read failed in the debug branch (500)."""

    def __init__(self, detail: Any = None):
        super().__init__("KB debug failed", 500, detail)


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Relay request failed: %s (%s)", exc.error, exc.detail)
    return JSONResponse(
        exc.to_dict(),
        status_code=exc.status_code,
        headers=dict(CORS_HEADERS),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RelayError, relay_error_handler)
