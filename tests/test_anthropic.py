"""Tests for the Anthropic adapter: payloads, SSE parsing and error mapping."""

import json

import httpx
import pytest

from codeforge.models.anthropic import EMPTY_CONTENT, AnthropicAdapter, parse_sse_event
from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    CONTENT_BLOCK_START,
    CONTENT_BLOCK_STOP,
    ERROR,
    ContentBlock,
    GenerateRequest,
    Message,
    Tool,
)
from codeforge.models.errors import BackendError, TransportError
from codeforge.models.stream import ChunkAssembler


def _sse(*events: dict, extra_lines: tuple = ()) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    lines.extend(extra_lines)
    return ("\n".join(lines) + "\n").encode()


def _adapter(handler) -> AnthropicAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicAdapter(api_key="test-key", base_url="https://api.test", http_client=client)


def _request(*messages: Message, **kwargs) -> GenerateRequest:
    return GenerateRequest(messages=list(messages), **kwargs)


# ---------------------------------------------------------------------------
# parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_text_delta(self):
        chunk = parse_sse_event(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            "msg_1",
        )
        assert chunk.type == CONTENT_BLOCK_DELTA
        assert chunk.text == "Hi"
        assert chunk.id == "msg_1"

    def test_tool_use_start(self):
        chunk = parse_sse_event(
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {}},
            }
        )
        assert chunk.type == CONTENT_BLOCK_START
        assert chunk.index == 1
        assert chunk.tool_call.id == "toolu_1"
        assert chunk.tool_call.name == "read_file"

    def test_input_json_delta(self):
        chunk = parse_sse_event(
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"a'}}
        )
        assert chunk.tool_input_delta == '{"a'

    def test_block_stop(self):
        chunk = parse_sse_event({"type": "content_block_stop", "index": 2})
        assert chunk.type == CONTENT_BLOCK_STOP
        assert chunk.index == 2

    def test_in_stream_error(self):
        chunk = parse_sse_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        assert chunk.type == ERROR
        assert chunk.error == "overloaded_error: Overloaded"

    @pytest.mark.parametrize("event_type", ["ping", "message_delta", "message_stop"])
    def test_uninteresting_events_ignored(self, event_type):
        assert parse_sse_event({"type": event_type}) is None


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class TestBuildPayload:
    def test_system_out_of_band_and_alternation(self):
        adapter = AnthropicAdapter(api_key="k")
        payload = adapter.build_payload(
            _request(
                Message(role="system", content="Be brief."),
                Message(role="user", content="hi"),
                Message(role="tool", content="file contents"),
                Message(role="user", content="thanks"),
            )
        )
        assert payload["system"] == "Be brief."
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assert payload["max_tokens"] == 4096
        assert "temperature" not in payload
        assert "tools" not in payload

    def test_tools_and_temperature(self):
        adapter = AnthropicAdapter(api_key="k")
        tool = Tool(name="bash", description="Run a command", input_schema={"type": "object"})
        payload = adapter.build_payload(_request(Message(role="user", content="go"), tools=[tool], temperature=0.3))
        assert payload["tools"] == [{"name": "bash", "description": "Run a command", "input_schema": {"type": "object"}}]
        assert payload["temperature"] == 0.3

    def test_zero_temperature_is_sent(self):
        adapter = AnthropicAdapter(api_key="k")
        payload = adapter.build_payload(_request(Message(role="user", content="go"), temperature=0.0))
        assert payload["temperature"] == 0.0

    def test_tool_blocks_rendered_as_text(self):
        adapter = AnthropicAdapter(api_key="k")
        use = ContentBlock(type="tool_use", id="t1", name="read_file", input={"file_path": "a.py"})
        payload = adapter.build_payload(
            _request(Message(role="user", content="go"), Message(role="assistant", content=[use]))
        )
        assistant = payload["messages"][1]
        assert assistant["content"][0]["type"] == "text"
        assert assistant["content"][0]["text"].startswith("⚡ Tool call read_file:")

    def test_empty_content_placeholder(self):
        adapter = AnthropicAdapter(api_key="k")
        payload = adapter.build_payload(_request(Message(role="user", content="")))
        assert payload["messages"][0]["content"] == EMPTY_CONTENT


# ---------------------------------------------------------------------------
# Streaming over a mock transport
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_text_and_tool_use_stream(self):
        body = _sse(
            {"type": "message_start", "message": {"id": "msg_42"}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Reading "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "file"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "ping"},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_9", "name": "read_file", "input": {}},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"file_'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": 'path": "a.py"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_stop"},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            sent = json.loads(request.content)
            assert sent["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        adapter = _adapter(handler)
        stream = await adapter.stream_response(_request(Message(role="user", content="read a.py")))
        assembler = ChunkAssembler()
        async for chunk in stream:
            assert chunk.id == "msg_42"
            assembler.feed(chunk)

        assert assembler.text == "Reading file"
        assert assembler.tool_calls[0].id == "toolu_9"
        assert assembler.tool_calls[0].input == {"file_path": "a.py"}
        await adapter.close()

    async def test_malformed_line_skipped(self):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "before "}},
        ) + b"data: {not json\n\n" + _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "after"}},
        )
        adapter = _adapter(lambda request: httpx.Response(200, content=body))
        stream = await adapter.stream_response(_request(Message(role="user", content="hi")))
        texts = [chunk.text async for chunk in stream]
        assert texts == ["before ", "after"]

    async def test_in_stream_error_ends_stream(self):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "partial"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "never"}},
        )
        adapter = _adapter(lambda request: httpx.Response(200, content=body))
        stream = await adapter.stream_response(_request(Message(role="user", content="hi")))
        chunks = [chunk async for chunk in stream]
        assert [c.type for c in chunks] == [CONTENT_BLOCK_DELTA, ERROR]

    async def test_status_error_raises_backend_error(self):
        adapter = _adapter(
            lambda request: httpx.Response(
                400, json={"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}}
            )
        )
        with pytest.raises(BackendError) as excinfo:
            await adapter.stream_response(_request(Message(role="user", content="hi")))
        assert excinfo.value.status_code == 400
        assert "invalid_request_error" in excinfo.value.body

    async def test_connect_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = _adapter(handler)
        with pytest.raises(TransportError):
            await adapter.stream_response(_request(Message(role="user", content="hi")))


# ---------------------------------------------------------------------------
# Single-shot generate
# ---------------------------------------------------------------------------


class TestGenerate:
    async def test_generate_response(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "id": "msg_1",
                    "type": "message",
                    "role": "assistant",
                    "model": "claude-3-5-sonnet-20241022",
                    "content": [
                        {"type": "text", "text": "Sure."},
                        {"type": "tool_use", "id": "toolu_1", "name": "bash", "input": {"command": "ls"}},
                    ],
                    "stop_reason": "tool_use",
                    "stop_sequence": None,
                    "usage": {"input_tokens": 12, "output_tokens": 7},
                },
            )

        response = await _adapter(handler).generate_response(_request(Message(role="user", content="list")))
        assert response.content == "Sure."
        assert response.tool_calls[0].input == {"command": "ls"}
        assert response.input_tokens == 12
        assert response.stop_reason == "tool_use"

    async def test_server_error(self):
        adapter = _adapter(lambda request: httpx.Response(500, text="upstream exploded"))
        with pytest.raises(BackendError) as excinfo:
            await adapter.generate_response(_request(Message(role="user", content="hi")))
        assert excinfo.value.status_code == 500
        assert "500" in str(excinfo.value)
