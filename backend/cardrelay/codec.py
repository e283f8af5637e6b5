"""SSE frame codec.

Outbound: one normalized event -> one ``data: <json>\\n\\n`` frame.
Inbound: incremental splitting of an upstream SSE body into ``data:``
payloads, tolerant of chunks that cut lines (or UTF-8 sequences) anywhere.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any

from sse_starlette.sse import ServerSentEvent

from cardrelay.models import OutboundEvent, StreamUsage

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
FRAME_SEPARATOR = "\n"


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

def event_json(event: OutboundEvent) -> str:
    return event.model_dump_json(by_alias=True)


def to_server_sent_event(event: OutboundEvent) -> ServerSentEvent:
    """Wrap an event as an unnamed SSE record (data line only)."""
    return ServerSentEvent(data=event_json(event), sep=FRAME_SEPARATOR)


def encode_event(event: OutboundEvent) -> str:
    """Serialize one event to its wire frame: ``data: {...}\\n\\n``."""
    return to_server_sent_event(event).encode().decode("utf-8")


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

class SSELineBuffer:
    """Accumulates raw stream data and returns complete ``data:`` payloads.

    A trailing partial line stays buffered until the next ``feed``.
    Blank lines, comments and non-data fields are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, data: str | bytes) -> list[str]:
        if isinstance(data, bytes):
            data = self._decoder.decode(data)
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")

        payloads: list[str] = []
        for raw in lines:
            line = raw.rstrip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if payload:
                payloads.append(payload)
        return payloads


@dataclass(frozen=True)
class UpstreamFrame:
    """One decoded upstream record: a content delta, a usage report, or [DONE]."""
    delta: str = ""
    usage: dict[str, Any] | None = None
    done: bool = False


def parse_upstream_payload(payload: str) -> UpstreamFrame | None:
    """Parse a chat-completion chunk. Returns None for anything that isn't one."""
    try:
        data = json.loads(payload)
    except ValueError:
        # keep-alives and other noise
        return None
    if not isinstance(data, dict):
        return None

    delta = ""
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        content = (choices[0].get("delta") or {}).get("content")
        if isinstance(content, str):
            delta = content

    usage = data.get("usage")
    return UpstreamFrame(
        delta=delta,
        usage=usage if isinstance(usage, dict) else None,
    )


class UpstreamDecoder:
    """Incremental decoder for an OpenAI-style streaming body.

    Tracks running usage (last value wins). After the ``[DONE]`` sentinel,
    further input is ignored.
    """

    def __init__(self) -> None:
        self._lines = SSELineBuffer()
        self.usage = StreamUsage()
        self.finished = False

    def feed(self, data: str | bytes) -> list[UpstreamFrame]:
        if self.finished:
            return []

        frames: list[UpstreamFrame] = []
        for payload in self._lines.feed(data):
            if payload == DONE_SENTINEL:
                self.finished = True
                frames.append(UpstreamFrame(done=True))
                break
            frame = parse_upstream_payload(payload)
            if frame is None:
                logger.debug("Skipping unparsable upstream line (%d chars)", len(payload))
                continue
            if frame.usage is not None:
                self.usage.update(frame.usage)
            frames.append(frame)
        return frames
