"""Tests for the chunk channel, synthesized streams and chunk assembly."""

import asyncio

import pytest

from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    CONTENT_BLOCK_START,
    CONTENT_BLOCK_STOP,
    ERROR,
    Response,
    StreamChunk,
    ToolCall,
)
from codeforge.models.stream import ChunkAssembler, ChunkStream, split_words, synthesize_stream

from conftest import text_chunks, tool_chunks


async def _collect(stream: ChunkStream) -> list[StreamChunk]:
    return [chunk async for chunk in stream]


# ---------------------------------------------------------------------------
# ChunkStream
# ---------------------------------------------------------------------------


class TestChunkStream:
    async def test_delivers_in_order_then_ends(self):
        chunks = text_chunks("one two three")
        stream = ChunkStream.from_chunks(chunks)
        assert await _collect(stream) == chunks

    async def test_producer_crash_becomes_error_chunk(self):
        async def produce(emit):
            await emit(StreamChunk(type=CONTENT_BLOCK_DELTA, text="partial"))
            raise RuntimeError("connection reset")

        received = await _collect(ChunkStream(produce, provider="test"))
        assert received[0].text == "partial"
        assert received[-1].type == ERROR
        assert "connection reset" in received[-1].error

    async def test_close_cancels_producer_and_stops_delivery(self):
        produced = []
        released = asyncio.Event()

        async def produce(emit):
            for i in range(1000):
                produced.append(i)
                await emit(StreamChunk(type=CONTENT_BLOCK_DELTA, text=str(i)))

        async def on_close():
            released.set()

        stream = ChunkStream(produce, maxsize=2, on_close=on_close)
        first = await stream.__anext__()
        assert first.text == "0"
        await stream.aclose()

        assert stream.closed
        assert released.is_set()
        assert await _collect(stream) == []
        # Bounded buffer: the producer never ran far ahead
        assert len(produced) < 10

    async def test_close_before_producer_runs_still_releases(self):
        released = []

        async def produce(emit):
            await emit(StreamChunk(type=CONTENT_BLOCK_DELTA, text="never"))

        async def on_close():
            released.append(True)

        stream = ChunkStream(produce, on_close=on_close)
        await stream.aclose()
        await stream.aclose()
        assert released == [True]

    async def test_async_with_closes(self):
        async with ChunkStream.from_chunks(text_chunks("a b")) as stream:
            await stream.__anext__()
        assert stream.closed


# ---------------------------------------------------------------------------
# synthesize_stream
# ---------------------------------------------------------------------------


class TestSynthesizeStream:
    def test_split_words_keeps_whitespace(self):
        assert split_words("Hello world foo") == ["Hello ", "world ", "foo"]
        assert "".join(split_words("  spaced\n\nout  ")) == "  spaced\n\nout  "

    async def test_text_only(self):
        """'Hello world foo' → three deltas and one stop."""
        stream = synthesize_stream(Response(id="r1", content="Hello world foo"))
        chunks = await _collect(stream)
        assert [c.type for c in chunks] == [CONTENT_BLOCK_DELTA] * 3 + [CONTENT_BLOCK_STOP]
        assert [c.text for c in chunks[:3]] == ["Hello ", "world ", "foo"]
        assert all(c.id == "r1" for c in chunks)

    async def test_tool_calls_follow_text(self):
        call = ToolCall(id="c1", name="read_file", input={"file_path": "a.py"})
        stream = synthesize_stream(Response(id="r2", content="Reading", tool_calls=[call]))
        chunks = await _collect(stream)
        assert chunks[-1].type == CONTENT_BLOCK_STOP
        assert chunks[-1].index == 1
        assert chunks[-1].tool_call == call

    async def test_empty_response_yields_nothing(self):
        assert await _collect(synthesize_stream(Response(id="r3"))) == []


# ---------------------------------------------------------------------------
# ChunkAssembler
# ---------------------------------------------------------------------------


class TestChunkAssembler:
    def test_text_and_fragmented_tool_input(self):
        assembler = ChunkAssembler()
        completed = []
        for chunk in text_chunks("Let me look") + tool_chunks("t1", "read_file", '{"file_path": "src/main.py"}'):
            completed.extend(assembler.feed(chunk))

        assert assembler.text == "Let me look"
        assert len(completed) == 1
        assert completed[0].id == "t1"
        assert completed[0].input == {"file_path": "src/main.py"}

    def test_finalized_call_on_stop_chunk(self):
        assembler = ChunkAssembler()
        call = ToolCall(id="c9", name="bash", input={"command": "ls"})
        completed = assembler.feed(StreamChunk(type=CONTENT_BLOCK_STOP, index=1, tool_call=call))
        assert completed == [call]
        assert assembler.tool_calls == [call]

    def test_interleaved_tool_blocks(self):
        assembler = ChunkAssembler()
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_START, index=1, tool_call=ToolCall(id="a", name="grep")))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_START, index=2, tool_call=ToolCall(id="b", name="find")))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_DELTA, index=2, tool_input_delta='{"pattern": "*.py"}'))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_DELTA, index=1, tool_input_delta='{"pattern": "TODO"}'))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_STOP, index=2))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_STOP, index=1))
        assert [(c.id, c.input["pattern"]) for c in assembler.tool_calls] == [("b", "*.py"), ("a", "TODO")]

    def test_malformed_input_leaves_empty_dict(self):
        assembler = ChunkAssembler()
        for chunk in tool_chunks("t1", "read_file", '{"file_path": '):
            assembler.feed(chunk)
        assert assembler.tool_calls[0].input == {}

    def test_missing_id_is_generated(self):
        assembler = ChunkAssembler()
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_STOP, index=1, tool_call=ToolCall(name="bash")))
        assert assembler.tool_calls[0].id.startswith("call_")

    def test_finish_closes_unterminated_calls(self):
        assembler = ChunkAssembler()
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_START, index=1, tool_call=ToolCall(id="x", name="bash")))
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_DELTA, index=1, tool_input_delta='{"command": "pwd"}'))
        finished = assembler.finish()
        assert finished[0].input == {"command": "pwd"}

    def test_error_chunk_recorded(self):
        assembler = ChunkAssembler()
        assembler.feed(StreamChunk(type=ERROR, error="overloaded"))
        assert assembler.error == "overloaded"

    @pytest.mark.parametrize("raw", ['{"a": 1}', '{"nested": {"b": [1, 2]}}'])
    def test_arguments_string_parsed(self, raw):
        assembler = ChunkAssembler()
        assembler.feed(StreamChunk(type=CONTENT_BLOCK_STOP, index=1, tool_call=ToolCall(id="z", name="t", arguments=raw)))
        assert assembler.tool_calls[0].input
