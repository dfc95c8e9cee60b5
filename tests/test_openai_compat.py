"""Tests for the OpenAI-compatible adapter."""

import json

import httpx
import pytest

from codeforge.models.base import CONTENT_BLOCK_DELTA, CONTENT_BLOCK_STOP, ContentBlock, GenerateRequest, ImageSource, Message
from codeforge.models.errors import BackendError, DecodeError
from codeforge.models.openai_compat import OpenAICompatAdapter, _convert_content_for_openai, _to_openai_messages


def _completion(content="", tool_calls=None, finish_reason="stop") -> dict:
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def _adapter(handler) -> OpenAICompatAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatAdapter(base_url="https://api.test/v1", api_key="k", http_client=client)


def _request(text="hi") -> GenerateRequest:
    return GenerateRequest(messages=[Message(role="user", content=text)])


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


class TestMessageConversion:
    def test_image_becomes_data_uri(self):
        blocks = [
            ContentBlock(type="text", text="what is this?"),
            ContentBlock(type="image", source=ImageSource(media_type="image/jpeg", data="QUJD")),
        ]
        converted = _convert_content_for_openai(blocks)
        assert converted[1] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,QUJD"}}

    def test_single_text_block_is_plain_string(self):
        assert _convert_content_for_openai([ContentBlock(type="text", text="hello")]) == "hello"

    def test_assistant_tool_use_and_matching_result(self):
        use = ContentBlock(type="tool_use", id="call_1", name="bash", input={"command": "ls"})
        messages = [
            Message(role="system", content="sys"),
            Message(role="user", content="list"),
            Message(role="assistant", content=[use]),
            Message(role="tool", content="a.py", tool_call_id="call_1"),
        ]
        out = _to_openai_messages(messages)
        assert out[2]["content"] is None
        assert out[2]["tool_calls"][0]["function"] == {"name": "bash", "arguments": '{"command": "ls"}'}
        assert out[3] == {"role": "tool", "tool_call_id": "call_1", "content": "a.py"}

    def test_orphan_tool_result_downgraded_to_user(self):
        out = _to_openai_messages([Message(role="tool", content="stale", tool_call_id="gone")])
        assert out == [{"role": "user", "content": "stale"}]


# ---------------------------------------------------------------------------
# Requests over a mock transport
# ---------------------------------------------------------------------------


class TestGenerate:
    async def test_text_response(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json=_completion("Hello there"))

        response = await _adapter(handler).generate_response(_request())
        assert response.content == "Hello there"
        assert response.input_tokens == 10
        assert response.output_tokens == 5
        assert seen["messages"] == [{"role": "user", "content": "hi"}]
        assert "stream" not in seen or seen["stream"] is False
        assert "temperature" not in seen

    async def test_zero_temperature_reaches_the_wire(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json=_completion("ok"))

        request = GenerateRequest(messages=[Message(role="user", content="hi")], temperature=0.0)
        await _adapter(handler).generate_response(request)
        assert seen["temperature"] == 0.0

    async def test_tool_calls_parsed(self):
        calls = [{"id": "call_7", "type": "function", "function": {"name": "read_file", "arguments": '{"file_path": "x.py"}'}}]
        adapter = _adapter(lambda request: httpx.Response(200, json=_completion(None, calls, "tool_calls")))
        response = await adapter.generate_response(_request())
        assert response.tool_calls[0].id == "call_7"
        assert response.tool_calls[0].input == {"file_path": "x.py"}
        assert response.stop_reason == "tool_calls"

    async def test_malformed_arguments_raise_decode_error(self):
        calls = [{"id": "call_7", "type": "function", "function": {"name": "read_file", "arguments": "{oops"}}]
        adapter = _adapter(lambda request: httpx.Response(200, json=_completion(None, calls, "tool_calls")))
        with pytest.raises(DecodeError) as excinfo:
            await adapter.generate_response(_request())
        assert excinfo.value.part == "tool_calls[0].function.arguments"

    async def test_status_error(self):
        adapter = _adapter(lambda request: httpx.Response(429, json={"error": {"message": "slow down"}}))
        with pytest.raises(BackendError) as excinfo:
            await adapter.generate_response(_request())
        assert excinfo.value.status_code == 429
        assert "slow down" in excinfo.value.body


class TestSynthesizedStream:
    async def test_stream_replays_words_then_tool_calls(self):
        calls = [{"id": "call_1", "type": "function", "function": {"name": "bash", "arguments": '{"command": "pwd"}'}}]
        adapter = _adapter(lambda request: httpx.Response(200, json=_completion("Hello world foo", calls, "tool_calls")))
        stream = await adapter.stream_response(_request())
        chunks = [chunk async for chunk in stream]

        deltas = [c.text for c in chunks if c.type == CONTENT_BLOCK_DELTA]
        assert deltas == ["Hello ", "world ", "foo"]
        stops = [c for c in chunks if c.type == CONTENT_BLOCK_STOP]
        assert [s.index for s in stops] == [0, 1]
        assert stops[1].tool_call.input == {"command": "pwd"}

    async def test_provider_name_is_configurable(self):
        adapter = OpenAICompatAdapter(name="groq", api_key="k")
        assert adapter.available_models()[0].provider == "groq"
