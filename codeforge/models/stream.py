"""
Chunk channel shared by all adapters, plus the helpers that turn a
single-shot Response into chunks and fold chunks back into tool calls.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Awaitable, Callable, Optional

from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    CONTENT_BLOCK_START,
    CONTENT_BLOCK_STOP,
    ERROR,
    Response,
    StreamChunk,
    ToolCall,
)

logger = logging.getLogger(__name__)

STREAM_BUFFER_SIZE = 10

Emit = Callable[[StreamChunk], Awaitable[None]]
Producer = Callable[[Emit], Awaitable[None]]

_CLOSED = object()


class ChunkStream:
    """Bounded, async-iterable channel of StreamChunks fed by a producer task.

    The producer awaits `emit(chunk)`, which blocks while the buffer is
    full. Closing the stream cancels the producer; nothing is yielded
    afterwards. A producer that raises ends the stream with one error
    chunk.
    """

    def __init__(
        self,
        producer: Producer,
        *,
        provider: str = "",
        maxsize: int = STREAM_BUFFER_SIZE,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.provider = provider
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._on_close = on_close
        self._task = asyncio.create_task(self._run(producer))

    async def _emit(self, chunk: StreamChunk) -> None:
        if self._closed:
            return
        await self._queue.put(chunk)

    async def _release(self) -> None:
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            await on_close()

    async def _run(self, producer: Producer) -> None:
        try:
            await producer(self._emit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s stream failed: %s", self.provider or "provider", exc)
            await self._emit(StreamChunk(type=ERROR, error=f"Streaming error: {exc}"))
        finally:
            await self._release()
        if not self._closed:
            await self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> StreamChunk:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            self._closed = True
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Cancel the producer and release its connection. Idempotent."""
        self._closed = True
        if not self._task.done():
            self._task.cancel()
        await asyncio.wait([self._task])
        await self._release()

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @classmethod
    def from_chunks(cls, chunks: list[StreamChunk], *, provider: str = "") -> "ChunkStream":
        async def produce(emit: Emit) -> None:
            for chunk in chunks:
                await emit(chunk)

        return cls(produce, provider=provider)


def split_words(text: str) -> list[str]:
    """Split text into word-sized pieces whose concatenation is exactly `text`."""
    return re.findall(r"\S+\s*|\s+", text)


def synthesize_stream(response: Response, *, provider: str = "") -> ChunkStream:
    """Replay a completed Response as a chunk stream.

    Text goes out word by word on block 0, then one stop chunk per tool
    call on blocks 1..n, each carrying the finalized call.
    """
    chunks: list[StreamChunk] = []
    if response.content:
        for word in split_words(response.content):
            chunks.append(StreamChunk(type=CONTENT_BLOCK_DELTA, id=response.id, index=0, text=word))
        chunks.append(StreamChunk(type=CONTENT_BLOCK_STOP, id=response.id, index=0))
    for i, call in enumerate(response.tool_calls):
        chunks.append(StreamChunk(type=CONTENT_BLOCK_STOP, id=response.id, index=i + 1, tool_call=call))
    return ChunkStream.from_chunks(chunks, provider=provider)


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ChunkAssembler:
    """Folds a chunk sequence into assistant text and completed tool calls."""

    def __init__(self):
        self.text_parts: list[str] = []
        self.tool_calls: list[ToolCall] = []
        self.chunk_count = 0
        self.error: Optional[str] = None
        self._open: dict[int, ToolCall] = {}
        self._buffers: dict[int, list[str]] = {}

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def feed(self, chunk: StreamChunk) -> list[ToolCall]:
        """Consume one chunk; return the tool calls it completed."""
        self.chunk_count += 1
        completed: list[ToolCall] = []

        if chunk.type == CONTENT_BLOCK_START:
            if chunk.tool_call is not None:
                self._open[chunk.index] = chunk.tool_call.model_copy(deep=True)
                self._buffers[chunk.index] = []
            elif chunk.text:
                self.text_parts.append(chunk.text)

        elif chunk.type == CONTENT_BLOCK_DELTA:
            if chunk.text:
                self.text_parts.append(chunk.text)
            if chunk.tool_input_delta:
                index = chunk.index if chunk.index in self._open else self._latest_open()
                if index is None:
                    logger.debug("tool input delta for unknown block %d dropped", chunk.index)
                else:
                    self._buffers[index].append(chunk.tool_input_delta)

        elif chunk.type == CONTENT_BLOCK_STOP:
            if chunk.index in self._open:
                call = self._open.pop(chunk.index)
                if chunk.tool_call is not None and chunk.tool_call.input:
                    call.input = dict(chunk.tool_call.input)
                completed.append(self._finalize(call, self._buffers.pop(chunk.index, [])))
            elif chunk.tool_call is not None:
                completed.append(self._finalize(chunk.tool_call.model_copy(deep=True), []))

        elif chunk.type == ERROR:
            self.error = chunk.error or "stream error"

        self.tool_calls.extend(completed)
        return completed

    def finish(self) -> list[ToolCall]:
        """Finalize calls whose stop chunk never arrived."""
        completed = []
        for index in sorted(self._open):
            completed.append(self._finalize(self._open[index], self._buffers.pop(index, [])))
        self._open.clear()
        self.tool_calls.extend(completed)
        return completed

    def _latest_open(self) -> Optional[int]:
        return max(self._open) if self._open else None

    def _finalize(self, call: ToolCall, buffered: list[str]) -> ToolCall:
        raw = "".join(buffered) or (call.arguments if not call.input else "")
        if raw.strip():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("could not parse input for tool %s: %r", call.name, raw[:200])
                parsed = None
            if isinstance(parsed, dict):
                call.input = parsed
        if not call.id:
            call.id = new_tool_call_id()
        return call
