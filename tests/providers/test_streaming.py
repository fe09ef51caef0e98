"""Unit tests for LineBuffer, decode_stream() and StreamReassembler."""

from collections.abc import AsyncIterator

import pytest

from llmchat.providers.errors import UpstreamStreamError
from llmchat.providers.models import Done, StreamError, StreamEvent, TextDelta
from llmchat.providers.streaming import LineBuffer, StreamReassembler, decode_stream
from llmchat.providers.wire import AnthropicWire, GatewayWire, OpenAIWire

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _chunks(*parts: bytes | str) -> AsyncIterator[bytes | str]:
    for part in parts:
        yield part


async def _events(*events: StreamEvent) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event


async def _collect(chunks: AsyncIterator[bytes | str], wire) -> list[StreamEvent]:
    return [event async for event in decode_stream(chunks, wire)]


_OPENAI = OpenAIWire("https://api.openai.com")
_ANTHROPIC = AnthropicWire("https://api.anthropic.com", "2023-06-01", 4096)
_GATEWAY = GatewayWire("http://gateway:4000")


# ---------------------------------------------------------------------------
# LineBuffer
# ---------------------------------------------------------------------------


class TestLineBuffer:
    def test_complete_lines_returned(self) -> None:
        buffer = LineBuffer()
        assert buffer.push("a\nb\n") == ["a", "b"]

    def test_fragment_held_until_newline(self) -> None:
        buffer = LineBuffer()
        assert buffer.push("0:Hel") == []
        assert buffer.push("lo\n") == ["0:Hello"]

    def test_crlf_stripped(self) -> None:
        buffer = LineBuffer()
        assert buffer.push("data: x\r\n") == ["data: x"]

    def test_flush_returns_trailing_fragment(self) -> None:
        buffer = LineBuffer()
        buffer.push("tail")
        assert buffer.flush() == ["tail"]
        assert buffer.flush() == []


# ---------------------------------------------------------------------------
# decode_stream()
# ---------------------------------------------------------------------------


class TestDecodeStream:
    async def test_gateway_split_frame_reassembled(self) -> None:
        events = await _collect(_chunks(b"0:Hel", b"lo\n", b"[DONE]\n"), _GATEWAY)
        assert events == [TextDelta("Hello"), Done()]

    async def test_multibyte_character_split_across_reads(self) -> None:
        encoded = "0:café\n".encode()
        events = await _collect(_chunks(encoded[:6], encoded[6:], b"[DONE]\n"), _GATEWAY)
        assert events[0] == TextDelta("café")

    async def test_stops_at_done(self) -> None:
        events = await _collect(_chunks(b"0:a\n[DONE]\n0:ignored\n"), _GATEWAY)
        assert events == [TextDelta("a"), Done()]

    async def test_trailing_line_without_newline_is_decoded(self) -> None:
        events = await _collect(_chunks(b"0:a\n[DONE]"), _GATEWAY)
        assert events == [TextDelta("a"), Done()]

    async def test_openai_close_without_sentinel_synthesizes_done(self) -> None:
        line = b'data: {"choices":[{"delta":{"content":"hi"}}]}\n'
        events = await _collect(_chunks(line), _OPENAI)
        assert events == [TextDelta("hi"), Done()]

    async def test_gateway_close_without_sentinel_has_no_done(self) -> None:
        events = await _collect(_chunks(b"0:partial\n"), _GATEWAY)
        assert events == [TextDelta("partial")]

    async def test_anthropic_close_without_stop_has_no_done(self) -> None:
        frame = (
            b'data: {"type":"content_block_delta","index":0,'
            b'"delta":{"type":"text_delta","text":"Hi"}}\n'
        )
        events = await _collect(_chunks(frame), _ANTHROPIC)
        assert events == [TextDelta("Hi")]

    async def test_str_chunks_accepted(self) -> None:
        events = await _collect(_chunks("0:x\n", "[DONE]\n"), _GATEWAY)
        assert events == [TextDelta("x"), Done()]


# ---------------------------------------------------------------------------
# StreamReassembler
# ---------------------------------------------------------------------------


class TestStreamReassembler:
    async def test_updates_are_prefixes(self) -> None:
        updates: list[str] = []
        reassembler = StreamReassembler(on_update=updates.append)

        content = await reassembler.consume(
            _events(TextDelta("Hel"), TextDelta("lo"), TextDelta(", world"), Done())
        )

        assert content == "Hello, world"
        assert updates == ["Hel", "Hello", "Hello, world"]
        for earlier, later in zip(updates, updates[1:]):
            assert later.startswith(earlier)
        assert reassembler.completed is True

    async def test_empty_delta_does_not_notify(self) -> None:
        updates: list[str] = []
        reassembler = StreamReassembler(on_update=updates.append)
        await reassembler.consume(_events(TextDelta(""), TextDelta("a"), Done()))
        assert updates == ["a"]

    async def test_events_after_done_ignored(self) -> None:
        reassembler = StreamReassembler()
        content = await reassembler.consume(_events(TextDelta("a"), Done(), TextDelta("b")))
        assert content == "a"

    async def test_partial_stream_keeps_content(self) -> None:
        reassembler = StreamReassembler()
        content = await reassembler.consume(_events(TextDelta("half")))
        assert content == "half"
        assert reassembler.completed is False

    async def test_stream_error_raises_with_message(self) -> None:
        reassembler = StreamReassembler()
        events = _events(
            TextDelta("a"),
            StreamError({"type": "overloaded_error", "message": "Overloaded"}),
        )
        with pytest.raises(UpstreamStreamError) as exc_info:
            await reassembler.consume(events)

        assert exc_info.value.message == "Overloaded"
        assert exc_info.value.raw == {"type": "overloaded_error", "message": "Overloaded"}
        assert reassembler.content == "a"

    def test_stream_error_without_message(self) -> None:
        reassembler = StreamReassembler()
        with pytest.raises(UpstreamStreamError) as exc_info:
            reassembler.feed(StreamError({}))
        assert exc_info.value.message == "stream reported an error"

    async def test_gateway_end_to_end_split_chunks(self) -> None:
        updates: list[str] = []
        reassembler = StreamReassembler(on_update=updates.append)
        content = await reassembler.consume(
            decode_stream(_chunks(b"0:Hel", b"lo\n0: there\n", b"[DONE]\n"), _GATEWAY)
        )
        assert content == "Hello there"
        assert updates == ["Hello", "Hello there"]
