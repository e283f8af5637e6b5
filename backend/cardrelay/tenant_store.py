"""Firestore-backed tenant lookups.

Business profiles live at ``businesses/{tenantId}`` and knowledge snippets
at ``businesses/{tenantId}/kb_chunks``. The relay only reads them; when the
service account is not configured every lookup degrades to empty.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import firebase_admin
from firebase_admin import credentials, firestore

from cardrelay.cache import TTLCache
from cardrelay.config import Settings
from cardrelay.models import BusinessProfile, KnowledgeChunk

logger = logging.getLogger(__name__)

BUSINESSES_COLLECTION = "businesses"
KB_COLLECTION = "kb_chunks"


def _parse_service_account(raw: str) -> dict[str, Any] | None:
    """Accept the service account as inline JSON or as a path to a JSON file."""
    raw = raw.strip()
    if not raw:
        return None

    if not raw.startswith("{"):
        path = Path(raw).expanduser()
        if not path.exists():
            logger.error("[firebase] Service account file not found: %s", path)
            return None
        raw = path.read_text(encoding="utf-8")

    try:
        creds = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("[firebase] Failed to parse FIREBASE_SERVICE_ACCOUNT: %s", e.msg)
        return None

    # .env files usually carry the key with escaped newlines
    key = creds.get("private_key")
    if isinstance(key, str) and "\\n" in key:
        creds["private_key"] = key.replace("\\n", "\n")
    return creds


class TenantStore:
    """Lazily-initialized Firestore handle, created once per process.

    ``client()`` is idempotent: the first call initializes Firebase Admin
    (or reuses an app someone else initialized) and later calls return the
    same client, or None when the store is not configured.
    """

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client
        self._initialized = client is not None

    @property
    def configured(self) -> bool:
        return self._client is not None or self._settings.tenant_store_configured

    def client(self) -> Any | None:
        if self._initialized:
            return self._client
        self._initialized = True

        creds = _parse_service_account(self._settings.firebase_service_account)
        if creds is None:
            logger.warning("[firebase] FIREBASE_SERVICE_ACCOUNT not set; Firestore reads disabled")
            return None

        try:
            app = firebase_admin.get_app()
        except ValueError:
            options = {"projectId": self._settings.firebase_project_id or creds.get("project_id")}
            try:
                app = firebase_admin.initialize_app(credentials.Certificate(creds), options)
            except ValueError as e:
                logger.error("[firebase] Invalid service account: %s", e)
                return None

        self._client = firestore.client(app)
        logger.info("[firebase] Firestore client ready (project=%s)", self._client.project)
        return self._client


# ---------------------------------------------------------------------------
# Blocking reads (run in a worker thread)
# ---------------------------------------------------------------------------

def _read_business(db: Any, tenant_id: str) -> dict[str, Any] | None:
    snap = db.collection(BUSINESSES_COLLECTION).document(tenant_id).get()
    if not snap.exists:
        return None
    return snap.to_dict() or {}


def _read_knowledge(db: Any, tenant_id: str) -> list[tuple[str, dict[str, Any]]]:
    col = db.collection(BUSINESSES_COLLECTION).document(tenant_id).collection(KB_COLLECTION)
    return [(doc.id, doc.to_dict() or {}) for doc in col.stream()]


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_text(value: Any) -> str:
    """Falsy values become "", anything else its string form."""
    return str(value) if value else ""


def _as_vector(value: Any) -> list[float]:
    return [
        float(x)
        for x in _as_list(value)
        if isinstance(x, (int, float)) and not isinstance(x, bool)
    ]


def _as_datetime(value: Any) -> datetime | None:
    # Firestore timestamps arrive as datetime subclasses
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class ContextFetcher:
    """Cached-or-fresh business profile and knowledge snippets for a tenant."""

    def __init__(self, store: TenantStore, cache: TTLCache, ttl: float = 90) -> None:
        self._store = store
        self._cache = cache
        self._ttl = ttl

    async def fetch_business(self, tenant_id: str) -> BusinessProfile | None:
        key = f"biz:{tenant_id}"
        cached = await self._cache.get(key)
        if cached is not None:
            return BusinessProfile.model_validate(cached)

        db = self._store.client()
        if db is None:
            return None

        data = await asyncio.to_thread(_read_business, db, tenant_id)
        if data is None:
            return None

        profile = BusinessProfile(
            name=_as_text(data.get("name")) or tenant_id,
            services=_as_list(data.get("services")),
            calendly_url=_as_text(data.get("calendlyUrl")) or None,
            logo_url=_as_text(data.get("logoUrl")) or None,
        )
        await self._cache.set(key, profile.model_dump(mode="json", by_alias=True), self._ttl)
        return profile

    async def fetch_knowledge(self, tenant_id: str) -> list[KnowledgeChunk]:
        key = f"kb:{tenant_id}"
        cached = await self._cache.get(key)
        if cached is not None:
            return [KnowledgeChunk.model_validate(row) for row in cached]

        db = self._store.client()
        if db is None:
            return []

        docs = await asyncio.to_thread(_read_knowledge, db, tenant_id)
        rows = [
            KnowledgeChunk(
                id=doc_id,
                text=_as_text(d.get("text")),
                source=_as_text(d.get("source")),
                tags=_as_list(d.get("tags")),
                embedding=_as_vector(d.get("embedding")),
                updated_at=_as_datetime(d.get("updatedAt")),
            )
            for doc_id, d in docs
        ]
        await self._cache.set(
            key, [row.model_dump(mode="json", by_alias=True) for row in rows], self._ttl
        )
        return rows
