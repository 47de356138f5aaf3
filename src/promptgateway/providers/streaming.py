"""Incremental server-sent-events decoding.

:class:`StreamDecoder` turns raw bytes, fed in whatever pieces the network
delivers, into :class:`~promptgateway.providers.models.StreamChunk` objects.
Partial lines are buffered until their terminator arrives.  Malformed JSON,
comments and non-``data`` fields are skipped, not fatal, because providers
emit keep-alives and occasionally broken frames.

The decoder terminates on ``data: [DONE]``, on a provider-specific terminal
frame, on an error frame (the final chunk then carries
:class:`~promptgateway.providers.models.FrameError`), or when
:meth:`StreamDecoder.close` is called at connection close.  Nothing is
emitted after termination.  A JSON document split over several ``data:``
lines of one event is joined with ``\n`` before parsing.
"""

import codecs
import json
from collections.abc import AsyncIterator
from enum import Enum

import structlog

from promptgateway.providers.errors import StreamConsumedError
from promptgateway.providers.models import StreamChunk
from promptgateway.providers.wire import WireFormat, codec_for

_log = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class DecoderState(Enum):
    AWAITING_LINE = "awaiting_line"
    DONE = "done"


class StreamDecoder:
    """Stateful SSE frame parser for one streaming response.

    Args:
        provider: Provider id or wire format whose delta extractor is applied
            to each parsed frame.
    """

    def __init__(self, provider: str | WireFormat) -> None:
        self._provider = provider
        self._codec = codec_for(provider)
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending: list[str] = []
        self.state = DecoderState.AWAITING_LINE

    @property
    def done(self) -> bool:
        return self.state is DecoderState.DONE

    def feed(self, data: bytes | str) -> list[StreamChunk]:
        """Consume the next piece of the stream and return completed chunks."""
        if self.done:
            return []
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text

        chunks: list[StreamChunk] = []
        while not self.done:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1 :]
            chunk = self._line(line)
            if chunk is not None:
                chunks.append(chunk)
        if self.done:
            self._buffer = ""
            self._pending = []
        return chunks

    def close(self) -> list[StreamChunk]:
        """Flush a trailing unterminated line and terminate the decoder."""
        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        chunks = []
        if tail.strip():
            chunk = self._line(tail.rstrip("\r"))
            if chunk is not None:
                chunks.append(chunk)
        if not self.done:
            chunk = self._dispatch_pending()
            if chunk is not None:
                chunks.append(chunk)
        if not self.done:
            self.state = DecoderState.DONE
            chunks.append(StreamChunk(raw=b"", delta=None, is_final=True))
        return chunks

    def _line(self, line: str) -> StreamChunk | None:
        if not line:
            # A blank line ends the event.
            return self._dispatch_pending()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if field != "data":
            # event:, id:, retry: carry nothing the gateway needs.
            return None
        payload = value[1:] if value.startswith(" ") else value

        if payload.strip() == DONE_SENTINEL:
            if self._pending:
                self._skip_pending()
            self.state = DecoderState.DONE
            return StreamChunk(raw=line.encode(), delta=None, is_final=True)

        # Providers put one JSON document on each data line, so a line that
        # parses on its own is dispatched at once.  Anything else is joined
        # with the following data lines of the same event.
        if self._pending:
            self._pending.append(payload)
            try:
                frame = json.loads("\n".join(self._pending))
            except ValueError:
                try:
                    frame = json.loads(payload)
                except ValueError:
                    return None
                self._pending.pop()
                self._skip_pending()
                return self._frame(frame, line.encode())
            raw = self._raw_pending()
            self._pending = []
            return self._frame(frame, raw)

        try:
            frame = json.loads(payload)
        except ValueError:
            self._pending = [payload]
            return None
        return self._frame(frame, line.encode())

    def _dispatch_pending(self) -> StreamChunk | None:
        if not self._pending:
            return None
        try:
            frame = json.loads("\n".join(self._pending))
        except ValueError:
            self._skip_pending()
            return None
        raw = self._raw_pending()
        self._pending = []
        return self._frame(frame, raw)

    def _skip_pending(self) -> None:
        _log.debug(
            "stream_frame_skipped",
            provider=str(self._provider),
            reason="malformed_json",
            lines=len(self._pending),
        )
        self._pending = []

    def _raw_pending(self) -> bytes:
        return "\n".join(f"data: {piece}" for piece in self._pending).encode()

    def _frame(self, frame: object, raw: bytes) -> StreamChunk | None:
        error = self._codec.extract_error(frame)
        if error is not None:
            self.state = DecoderState.DONE
            return StreamChunk(raw=raw, is_final=True, error=error)
        delta = self._codec.extract_delta(frame) or None
        if self._codec.is_terminal(frame):
            self.state = DecoderState.DONE
            return StreamChunk(raw=raw, delta=delta, is_final=True)
        if delta is None:
            return None
        return StreamChunk(raw=raw, delta=delta)


class DeltaStream:
    """Lazy, finite, single-use async sequence of text deltas.

    Wraps the generator that drives one streaming call.  Iterating a second
    time raises :class:`~promptgateway.providers.errors.StreamConsumedError`
    instead of silently yielding nothing.
    """

    def __init__(self, source: AsyncIterator[str]) -> None:
        self._source = source
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise StreamConsumedError("this stream has already been consumed")
        self._consumed = True
        return self._source

    async def aclose(self) -> None:
        """Stop the stream early and release the underlying connection."""
        self._consumed = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    async def collect(self) -> str:
        """Consume the whole stream and return the concatenated text."""
        return "".join([delta async for delta in self])
