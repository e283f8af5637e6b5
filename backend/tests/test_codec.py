"""Tests for the SSE frame codec — outbound encoding and incremental decoding."""

from __future__ import annotations

from cardrelay.codec import (
    SSELineBuffer,
    UpstreamDecoder,
    encode_event,
    parse_upstream_payload,
)
from cardrelay.models import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    ReadyEvent,
    StreamUsage,
)
from tests.conftest import DONE_FRAME, delta_frame, upstream_frame, usage_frame


def _decode(decoder: UpstreamDecoder, pieces: list[bytes]) -> list[tuple[str, str]]:
    out = []
    for piece in pieces:
        for frame in decoder.feed(piece):
            if frame.done:
                out.append(("done", ""))
            elif frame.delta:
                out.append(("chunk", frame.delta))
    return out


class TestEncode:
    def test_chunk_frame(self):
        assert encode_event(ChunkEvent(delta="Hel")) == 'data: {"type":"chunk","delta":"Hel"}\n\n'

    def test_ready_without_trace_id_is_null(self):
        assert encode_event(ReadyEvent()) == 'data: {"type":"ready","traceId":null}\n\n'

    def test_done_usage_is_camel_case(self):
        frame = encode_event(DoneEvent(usage=StreamUsage(prompt_tokens=5, completion_tokens=2)))
        assert frame == (
            'data: {"type":"done","usage":{"promptTokens":5,"completionTokens":2}}\n\n'
        )

    def test_newlines_stay_inside_one_data_line(self):
        frame = encode_event(ErrorEvent(message="line one\nline two"))
        assert frame.count("\n") == 2
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")


class TestSSELineBuffer:
    def test_partial_line_is_kept(self):
        buf = SSELineBuffer()
        assert buf.feed("data: {\"a\"") == []
        assert buf.pending == 'data: {"a"'
        assert buf.feed(": 1}\n") == ['{"a": 1}']
        assert buf.pending == ""

    def test_skips_blank_comment_and_other_fields(self):
        buf = SSELineBuffer()
        payloads = buf.feed(": keep-alive\n\nevent: message\nid: 7\ndata: x\n\n")
        assert payloads == ["x"]

    def test_handles_crlf(self):
        buf = SSELineBuffer()
        assert buf.feed("data: one\r\n\r\ndata: two\r\n") == ["one", "two"]

    def test_empty_data_line_is_skipped(self):
        buf = SSELineBuffer()
        assert buf.feed("data:\ndata:   \n") == []

    def test_utf8_split_across_chunks(self):
        raw = "data: café\n".encode()
        cut = raw.index(b"\xc3") + 1
        buf = SSELineBuffer()
        assert buf.feed(raw[:cut]) == []
        assert buf.feed(raw[cut:]) == ["café"]


class TestParseUpstreamPayload:
    def test_delta_content(self):
        frame = parse_upstream_payload('{"choices":[{"delta":{"content":"hi"}}]}')
        assert frame is not None
        assert frame.delta == "hi"
        assert frame.usage is None

    def test_role_only_delta_has_no_content(self):
        frame = parse_upstream_payload('{"choices":[{"delta":{"role":"assistant"}}]}')
        assert frame is not None
        assert frame.delta == ""

    def test_usage_only(self):
        frame = parse_upstream_payload('{"choices":[],"usage":{"prompt_tokens":3}}')
        assert frame is not None
        assert frame.usage == {"prompt_tokens": 3}

    def test_not_json(self):
        assert parse_upstream_payload("ping") is None

    def test_json_but_not_an_object(self):
        assert parse_upstream_payload("[1, 2]") is None


class TestUpstreamDecoder:
    BODY = (
        upstream_frame({"choices": [{"delta": {"role": "assistant"}}]})
        + delta_frame("Hel")
        + b": keep-alive\n\n"
        + upstream_frame("not json at all")
        + delta_frame("lo")
        + usage_frame(5, 2)
        + DONE_FRAME
    )
    EXPECTED = [("chunk", "Hel"), ("chunk", "lo"), ("done", "")]

    def test_whole_body(self):
        decoder = UpstreamDecoder()
        assert _decode(decoder, [self.BODY]) == self.EXPECTED
        assert decoder.finished
        assert decoder.usage == StreamUsage(prompt_tokens=5, completion_tokens=2)

    def test_every_two_way_split_gives_the_same_events(self):
        for cut in range(1, len(self.BODY)):
            decoder = UpstreamDecoder()
            assert _decode(decoder, [self.BODY[:cut], self.BODY[cut:]]) == self.EXPECTED, cut
            assert decoder.usage.prompt_tokens == 5

    def test_byte_by_byte(self):
        decoder = UpstreamDecoder()
        pieces = [self.BODY[i:i + 1] for i in range(len(self.BODY))]
        assert _decode(decoder, pieces) == self.EXPECTED

    def test_usage_last_value_wins(self):
        decoder = UpstreamDecoder()
        decoder.feed(usage_frame(10, 1) + usage_frame(12, 4))
        assert decoder.usage == StreamUsage(prompt_tokens=12, completion_tokens=4)

    def test_partial_usage_keeps_previous_values(self):
        decoder = UpstreamDecoder()
        decoder.feed(usage_frame(10, 1))
        decoder.feed(upstream_frame({"usage": {"completion_tokens": 7, "prompt_tokens": None}}))
        assert decoder.usage == StreamUsage(prompt_tokens=10, completion_tokens=7)

    def test_input_after_done_is_ignored(self):
        decoder = UpstreamDecoder()
        out = _decode(decoder, [DONE_FRAME + delta_frame("late"), delta_frame("later")])
        assert out == [("done", "")]

    def test_accepts_text_input(self):
        decoder = UpstreamDecoder()
        out = _decode(decoder, [delta_frame("hey").decode()])
        assert out == [("chunk", "hey")]
