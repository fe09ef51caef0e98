"""Incremental stream decoding and message reassembly.

Network reads do not respect line boundaries: a frame such as ``0:Hello``
may arrive as ``0:Hel`` followed by ``lo\\n``.  :class:`LineBuffer` holds the
incomplete trailing fragment until the rest arrives, :func:`decode_stream`
turns the resulting lines into stream events for one wire format, and
:class:`StreamReassembler` accumulates the events into the message text.
"""

import codecs
from collections.abc import AsyncIterable, AsyncIterator, Callable

import structlog

from llmchat.providers.errors import UpstreamStreamError
from llmchat.providers.models import Done, StreamError, StreamEvent, TextDelta
from llmchat.providers.wire import WireFormat

_log = structlog.get_logger(__name__)


class LineBuffer:
    """Split a chunked text stream into complete lines."""

    def __init__(self) -> None:
        self._pending = ""

    def push(self, chunk: str) -> list[str]:
        """Return the lines completed by *chunk*; keep the trailing fragment."""
        data = self._pending + chunk
        lines = data.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has closed."""
        rest, self._pending = self._pending, ""
        rest = rest.rstrip("\r")
        return [rest] if rest else []


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
    wire: WireFormat,
) -> AsyncIterator[StreamEvent]:
    """Yield the stream events carried by *chunks*, in arrival order.

    Bytes are decoded incrementally as UTF-8 so a multi-byte character split
    across reads is not corrupted.  Iteration stops at the first ``Done``.
    When the transport closes without one, ``Done`` is synthesized only for
    formats that end on close; otherwise the stream simply ends and the
    reassembler keeps the partial content.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = LineBuffer()

    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        for line in buffer.push(text):
            event = wire.decode_line(line)
            if event is None:
                continue
            yield event
            if isinstance(event, Done):
                return

    for line in buffer.push(decoder.decode(b"", final=True)) + buffer.flush():
        event = wire.decode_line(line)
        if event is None:
            continue
        yield event
        if isinstance(event, Done):
            return

    if wire.terminates_on_close:
        yield Done()
    else:
        _log.warning("stream_closed_without_done", provider=wire.provider.value)


def _error_message(raw: object) -> str:
    if isinstance(raw, dict):
        message = raw.get("message") or raw.get("error") or raw.get("type")
        if message:
            return str(message)
    if isinstance(raw, str) and raw:
        return raw
    return "stream reported an error"


class StreamReassembler:
    """Accumulate text deltas into one assistant message.

    The accumulator is append-only.  ``on_update`` is called synchronously
    with the full text so far after every non-empty delta.

    Example::

        reassembler = StreamReassembler(on_update=render)
        content = await reassembler.consume(adapter.stream(request))
    """

    def __init__(self, on_update: Callable[[str], None] | None = None) -> None:
        self._content = ""
        self._on_update = on_update
        self.completed = False

    @property
    def content(self) -> str:
        return self._content

    def feed(self, event: StreamEvent) -> None:
        if self.completed:
            return
        if isinstance(event, TextDelta):
            if not event.text:
                return
            self._content += event.text
            if self._on_update is not None:
                self._on_update(self._content)
        elif isinstance(event, Done):
            self.completed = True
        elif isinstance(event, StreamError):
            raise UpstreamStreamError(_error_message(event.raw), raw=event.raw)

    async def consume(self, events: AsyncIterable[StreamEvent]) -> str:
        """Feed every event and return the content.

        A sequence that ends without ``Done`` still returns what was
        received; ``completed`` stays ``False`` in that case.
        """
        async for event in events:
            self.feed(event)
        return self._content
