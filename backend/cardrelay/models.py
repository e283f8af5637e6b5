"""Pydantic models — the shared contract between the relay and its clients.

Request bodies, the normalized SSE event shapes and the tenant records read
from Firestore. Wire names are camelCase to match the browser front-end;
Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """POST /relay request body.

    ``bizId`` and ``debug`` are accepted for front-ends predating the
    tenant naming.
    """
    tenant_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("tenantId", "bizId", "tenant_id"),
    )
    messages: list[ChatMessage]
    trace_id: str | None = Field(
        default=None, validation_alias=AliasChoices("traceId", "trace_id")
    )
    debug_mode: str | None = Field(
        default=None, validation_alias=AliasChoices("debugMode", "debug", "debug_mode")
    )

    def upstream_messages(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    """GET /api/health response."""
    status: Literal["ok", "degraded"]
    version: str = "0.1.0"
    upstream_configured: bool
    tenant_store_configured: bool


# ---------------------------------------------------------------------------
# Tenant records (Firestore: businesses/{id}, businesses/{id}/kb_chunks)
# ---------------------------------------------------------------------------

class BusinessProfile(CamelModel):
    name: str
    services: list[Any] = Field(default_factory=list)
    calendly_url: str | None = None
    logo_url: str | None = None


class KnowledgeChunk(CamelModel):
    id: str
    text: str = ""
    source: str = ""
    tags: list[Any] = Field(default_factory=list)
    embedding: list[float] = Field(default_factory=list)
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# SSE event shapes (the JSON inside each `data:` frame)
# ---------------------------------------------------------------------------

class StreamUsage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def update(self, raw: dict[str, Any]) -> None:
        """Apply an upstream ``usage`` object. Last value wins; nulls are skipped."""
        prompt = raw.get("prompt_tokens")
        completion = raw.get("completion_tokens")
        if isinstance(prompt, int):
            self.prompt_tokens = prompt
        if isinstance(completion, int):
            self.completion_tokens = completion


class ReadyEvent(CamelModel):
    type: Literal["ready"] = "ready"
    trace_id: str | None = None


class ChunkEvent(CamelModel):
    type: Literal["chunk"] = "chunk"
    delta: str


class DoneEvent(CamelModel):
    type: Literal["done"] = "done"
    usage: StreamUsage | None = None


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str


class BusinessSummary(CamelModel):
    name: str
    calendly_url: str | None = None


class InfoEvent(CamelModel):
    """Debug-only: tenant store connectivity report."""
    type: Literal["info"] = "info"
    message: str
    biz: BusinessSummary | None = None
    kb_count: int = 0


OutboundEvent = Annotated[
    Union[ReadyEvent, ChunkEvent, DoneEvent, ErrorEvent, InfoEvent],
    Field(discriminator="type"),
]

outbound_event_adapter: TypeAdapter[OutboundEvent] = TypeAdapter(OutboundEvent)

TERMINAL_EVENT_TYPES = frozenset({"done", "error"})
