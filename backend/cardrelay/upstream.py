"""Upstream chat-completion client (OpenAI-compatible, streaming only)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cardrelay.config import Settings
from cardrelay.errors import UpstreamError

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 2000


def create_http_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build the shared AsyncClient.

    Only connecting is time-bounded here; the stream itself is bounded by
    the relay's hard timeout.
    """
    timeout = httpx.Timeout(None, connect=settings.upstream_connect_timeout_seconds)
    return httpx.AsyncClient(
        base_url=settings.openai_base_url.rstrip("/"),
        timeout=timeout,
        transport=transport,
    )


class CompletionClient:
    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "authorization": f"Bearer {self._settings.openai_api_key}",
        }

    def build_payload(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        return {
            "model": self._settings.model_name,
            "stream": True,
            "temperature": self._settings.model_temperature,
            "messages": messages,
        }

    async def open_stream(self, messages: list[dict[str, str]]) -> httpx.Response:
        """POST the completion request and return the still-open streaming response.

        The caller owns the response and must ``aclose()`` it. Raises
        UpstreamError if the call fails or answers non-2xx.
        """
        request = self._client.build_request(
            "POST",
            "/chat/completions",
            headers=self._headers(),
            json=self.build_payload(messages),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("Upstream unreachable: %s", exc)
            raise UpstreamError(detail=str(exc) or exc.__class__.__name__) from exc

        if response.is_success:
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await response.aclose()

        if len(body) > MAX_DETAIL_CHARS:
            body = f"{body[:MAX_DETAIL_CHARS]}...(truncated)"
        logger.warning(
            "Upstream HTTP error status_code=%s model=%s messages=%d",
            response.status_code,
            self._settings.model_name,
            len(messages),
        )
        raise UpstreamError(detail=body or response.status_code)
