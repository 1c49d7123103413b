"""
Server-sent-event decoding for OpenAI-compatible chat completion streams.

The transport hands over arbitrary byte chunks; a frame, a JSON payload or even
a multi-byte UTF-8 character may straddle two chunks. 'SSEDecoder' keeps the
incomplete tail between 'feed' calls and only parses complete lines.
'decode_sse_stream' wraps it as an async generator over a byte iterator.

Only 'data: ' lines carry payload. 'data: [DONE]' ends the stream. A payload
that fails to decode is logged and dropped, decoding carries on with the next
frame. That covers payloads that are not valid UTF-8: they are never handed
on with replacement characters. A well-formed '{"error": ...}' payload is the upstream reporting a
failure mid-stream and is raised as 'TransportError'.
"""

from collections.abc import AsyncGenerator, AsyncIterable

from loguru import logger
from pydantic import BaseModel, ValidationError

from streaming_chat.errors import MalformedFrameError, TransportError

DATA_PREFIX = "data: "
DATA_PREFIX_BYTES = DATA_PREFIX.encode()
DONE_SENTINEL = "[DONE]"


class ChunkDelta(BaseModel):
    content: str | None = None


class ChunkChoice(BaseModel):
    delta: ChunkDelta = ChunkDelta()


class ChatCompletionChunk(BaseModel):
    """The subset of a streamed 'chat.completion.chunk' the decoder reads."""

    choices: list[ChunkChoice] = []
    error: str | dict | None = None


class SSEDecoder:
    """
    Incremental decoder from raw bytes to content deltas.

    'feed' returns the deltas completed by a chunk. Once the '[DONE]' sentinel
    or an error frame has been seen 'done' is True and further input is
    ignored. An error frame is kept on 'error' so the deltas that preceded it
    in the same chunk are still delivered.

    Lines are buffered as bytes and only decoded once complete, strictly as
    UTF-8. A line that is not valid UTF-8 is a malformed frame.
    """

    def __init__(self) -> None:
        self._pending = b""
        self.done = False
        self.error: TransportError | None = None

    def feed(self, chunk: bytes) -> list[str]:
        if self.done:
            return []
        self._pending += chunk
        *lines, self._pending = self._pending.split(b"\n")
        return self._process(lines)

    def flush(self) -> list[str]:
        """Process whatever is left once the transport has no more bytes."""
        if self.done:
            return []
        remainder, self._pending = self._pending, b""
        return self._process([remainder])

    def _process(self, lines: list[bytes]) -> list[str]:
        deltas: list[str] = []
        for raw in lines:
            raw = raw.rstrip(b"\r")
            if not raw.startswith(DATA_PREFIX_BYTES):
                continue
            try:
                payload = decode_line(raw[len(DATA_PREFIX_BYTES) :]).strip()
                if payload == DONE_SENTINEL:
                    logger.debug("SSE stream reached [DONE]")
                    self.done = True
                    break
                delta = parse_frame(payload)
            except MalformedFrameError as exc:
                logger.warning(f"Dropping malformed SSE frame: {exc}")
                continue
            except TransportError as exc:
                logger.error(f"SSE stream carried an error frame: {exc}")
                self.error = exc
                self.done = True
                break
            if delta:
                deltas.append(delta)
        return deltas


def decode_line(raw: bytes) -> str:
    """Decode one complete SSE line, raising 'MalformedFrameError' on invalid UTF-8."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedFrameError(f"{raw[:80]!r} is not valid UTF-8 ({exc.reason} at byte {exc.start})") from exc


def parse_frame(payload: str) -> str | None:
    """Return the content delta carried by one 'data: ' payload, if any."""
    try:
        chunk = ChatCompletionChunk.model_validate_json(payload)
    except ValidationError as exc:
        raise MalformedFrameError(f"{payload[:80]!r} ({exc.error_count()} validation errors)") from exc
    if chunk.error is not None:
        message = chunk.error.get("message", str(chunk.error)) if isinstance(chunk.error, dict) else chunk.error
        raise TransportError(f"Upstream reported a streaming error: {message}")
    if not chunk.choices:
        return None
    return chunk.choices[0].delta.content


async def decode_sse_stream(chunks: AsyncIterable[bytes]) -> AsyncGenerator[str, None]:
    """Yield content deltas from a byte stream until '[DONE]' or end of input."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            break
    else:
        for delta in decoder.flush():
            yield delta
    if decoder.error is not None:
        raise decoder.error
