"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from cardrelay.cache import MemoryCache
from cardrelay.config import Settings, get_settings
from cardrelay.main import app
from cardrelay.tenant_store import ContextFetcher, TenantStore
from cardrelay.upstream import create_http_client


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------


def upstream_frame(payload: dict | str) -> bytes:
    """One upstream SSE record, as the completion API sends it."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def delta_frame(content: str) -> bytes:
    return upstream_frame({"choices": [{"index": 0, "delta": {"content": content}}]})


def usage_frame(prompt: int, completion: int) -> bytes:
    return upstream_frame(
        {"choices": [], "usage": {"prompt_tokens": prompt, "completion_tokens": completion}}
    )


DONE_FRAME = upstream_frame("[DONE]")


def parse_sse_events(raw: str) -> list[dict]:
    """Parse a normalized relay body (``data: <json>`` frames) into dicts."""
    events = []
    for line in raw.split("\n"):
        line = line.rstrip("\r")
        if line.startswith("data:"):
            events.append(json.loads(line[len("data:"):].strip()))
    return events


# ---------------------------------------------------------------------------
# Scripted upstream completion API
# ---------------------------------------------------------------------------


class FakeUpstream:
    """Completion API stand-in served through httpx.MockTransport.

    ``chunks`` is the streamed body; ``stall`` makes the body hang after the
    last chunk; ``fail_with`` raises mid-body.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.error_body = b""
        self.chunks: list[bytes] = [
            delta_frame("Hel"),
            delta_frame("lo"),
            usage_frame(5, 2),
            DONE_FRAME,
        ]
        self.stall: float = 0
        self.fail_with: Exception | None = None
        self.connect_error: Exception | None = None

    @property
    def called(self) -> bool:
        return bool(self.requests)

    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)

    async def _body(self) -> AsyncGenerator[bytes, None]:
        for chunk in self.chunks:
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with
        if self.stall:
            await asyncio.sleep(self.stall)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.connect_error is not None:
            raise self.connect_error
        if self.status_code != 200:
            return httpx.Response(self.status_code, content=self.error_body)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self._body(),
        )


# ---------------------------------------------------------------------------
# Firestore stand-in
# ---------------------------------------------------------------------------


def make_firestore(
    businesses: dict[str, dict] | None = None,
    kb: dict[str, list[tuple[str, dict]]] | None = None,
) -> MagicMock:
    """Mock Firestore client serving businesses/{id} and its kb_chunks."""
    businesses = businesses or {}
    kb = kb or {}
    db = MagicMock()
    db.project = "test-project"

    def document(tenant_id: str) -> MagicMock:
        data = businesses.get(tenant_id)
        doc_ref = MagicMock()
        doc_ref.get.return_value = MagicMock(
            exists=data is not None,
            to_dict=MagicMock(return_value=data),
        )
        docs = []
        for doc_id, row in kb.get(tenant_id, []):
            doc = MagicMock(to_dict=MagicMock(return_value=row))
            doc.id = doc_id
            docs.append(doc)
        doc_ref.collection.return_value.stream.return_value = docs
        return doc_ref

    db.collection.return_value.document.side_effect = document
    return db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        model_name="gpt-test",
        relay_timeout_seconds=5.0,
        firebase_service_account="",
        redis_url="",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def firestore_db() -> MagicMock:
    return make_firestore(
        businesses={
            "acme": {"name": "Acme Plumbing", "services": ["Repairs"], "calendlyUrl": None},
            "bloom": {"name": "Bloom Florist", "calendlyUrl": "https://calendly.com/bloom"},
        },
        kb={
            "acme": [
                ("c1", {"text": "Open 9-5", "source": "faq"}),
                ("c2", {"text": "We serve downtown", "tags": ["area"]}),
                ("c3", {"text": "Emergency line 24/7"}),
            ],
        },
    )


@pytest.fixture
def override_settings() -> Callable[[Settings], None]:
    def _override(new_settings: Settings) -> None:
        app.dependency_overrides[get_settings] = lambda: new_settings

    return _override


@pytest.fixture
async def client(
    test_settings: Settings,
    upstream: FakeUpstream,
    firestore_db: MagicMock,
    override_settings,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the relay app, wired to fake collaborators."""
    http_client = create_http_client(
        test_settings, transport=httpx.MockTransport(upstream.handler)
    )
    cache = MemoryCache()
    store = TenantStore(test_settings, client=firestore_db)
    app.state.http_client = http_client
    app.state.cache = cache
    app.state.tenant_store = store
    app.state.context_fetcher = ContextFetcher(store, cache, ttl=90)
    override_settings(test_settings)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await http_client.aclose()
