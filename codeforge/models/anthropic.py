"""
Anthropic (Claude) model adapter.
Uses the official anthropic SDK; streaming reads the raw SSE lines so a
malformed event is skipped instead of ending the stream.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import AsyncExitStack
from typing import Any, Optional

import anthropic
import httpx

from codeforge.logging_config import log_timing
from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    CONTENT_BLOCK_START,
    CONTENT_BLOCK_STOP,
    ERROR,
    BaseModelAdapter,
    GenerateRequest,
    Message,
    ModelInfo,
    Response,
    StreamChunk,
    Tool,
    ToolCall,
)
from codeforge.models.errors import BackendError, DecodeError, TransportError
from codeforge.models.roles import normalize_alternation
from codeforge.models.stream import ChunkStream, Emit

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
]
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TOKEN_LIMIT = 200_000
EMPTY_CONTENT = "(empty)"


class AnthropicAdapter(BaseModelAdapter):
    name = "anthropic"

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        api_key: str = "",
        base_url: Optional[str] = None,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        models: Optional[list[str]] = None,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model_name = model_name
        self._token_limit = token_limit
        self._models = models or DEFAULT_MODELS
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key or None,
            base_url=base_url,
            max_retries=0,
            timeout=timeout,
            http_client=http_client,
        )

    def available_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=m, name=m, provider=self.name, max_tokens=self._token_limit)
            for m in self._models
        ]

    def token_limit(self) -> int:
        return self._token_limit

    async def close(self) -> None:
        await self._client.close()

    def build_payload(self, request: GenerateRequest) -> dict[str, Any]:
        system, turns = normalize_alternation(request.messages)
        kwargs: dict[str, Any] = {
            "model": request.model or self.model_name,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [_to_anthropic_message(m) for m in turns],
        }
        if system:
            kwargs["system"] = system
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = [_to_anthropic_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            kwargs["tool_choice"] = request.tool_choice
        return kwargs

    async def generate_response(self, request: GenerateRequest) -> Response:
        kwargs = self.build_payload(request)
        start = time.perf_counter()
        with log_timing(logger, f"anthropic {kwargs['model']} generate"):
            try:
                message = await self._client.messages.create(**kwargs)
            except anthropic.APIStatusError as e:
                raise BackendError(self.name, e.status_code, e.response.text) from e
            except anthropic.APIConnectionError as e:
                raise TransportError(self.name, str(e)) from e
            except anthropic.APIResponseValidationError as e:
                raise DecodeError(self.name, "response body", str(e)) from e

        text_parts = []
        tool_calls = []
        for block in message.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input or {})))

        return Response(
            id=message.id,
            model=message.model,
            content="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=message.stop_reason or "",
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def stream_response(self, request: GenerateRequest) -> ChunkStream:
        kwargs = self.build_payload(request)
        stack = AsyncExitStack()
        try:
            response = await stack.enter_async_context(
                self._client.messages.with_streaming_response.create(**kwargs, stream=True)
            )
        except anthropic.APIStatusError as e:
            raise BackendError(self.name, e.status_code, e.response.text) from e
        except anthropic.APIConnectionError as e:
            raise TransportError(self.name, str(e)) from e

        async def produce(emit: Emit) -> None:
            await _pump_events(response, emit)

        return ChunkStream(produce, provider=self.name, on_close=stack.aclose)


async def _pump_events(response, emit: Emit) -> None:
    message_id = ""
    async for line in response.iter_lines():
        if not line.startswith("data:"):
            continue
        try:
            data = json.loads(line[5:].strip())
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE data: %r", line[:200])
            continue
        if not isinstance(data, dict):
            continue
        if data.get("type") == "message_start":
            message_id = (data.get("message") or {}).get("id", "")
            continue
        chunk = parse_sse_event(data, message_id)
        if chunk is None:
            continue
        await emit(chunk)
        if chunk.type == ERROR:
            return


def parse_sse_event(data: dict[str, Any], message_id: str = "") -> Optional[StreamChunk]:
    """Parse one Anthropic SSE event dict into a StreamChunk.

    Pings and message-level events carry nothing for the chunk stream.
    An in-stream error event (HTTP 200 but error in body) becomes an
    error chunk.
    """
    event_type = data.get("type")
    index = data.get("index", 0)

    if event_type == "error":
        error = data.get("error") or {}
        return StreamChunk(
            type=ERROR,
            id=message_id,
            error=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return StreamChunk(
                type=CONTENT_BLOCK_START,
                id=message_id,
                index=index,
                tool_call=ToolCall(id=block.get("id", ""), name=block.get("name", "")),
            )
        if block.get("text"):
            return StreamChunk(type=CONTENT_BLOCK_START, id=message_id, index=index, text=block["text"])
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return StreamChunk(type=CONTENT_BLOCK_DELTA, id=message_id, index=index, text=delta["text"])
        if delta.get("type") == "input_json_delta" and delta.get("partial_json"):
            return StreamChunk(
                type=CONTENT_BLOCK_DELTA,
                id=message_id,
                index=index,
                tool_input_delta=delta["partial_json"],
            )
        return None

    if event_type == "content_block_stop":
        return StreamChunk(type=CONTENT_BLOCK_STOP, id=message_id, index=index)

    return None


def _to_anthropic_tool(tool: Tool) -> dict[str, Any]:
    return {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}


def _to_anthropic_message(msg: Message) -> dict[str, Any]:
    """Convert a normalized turn to Anthropic API format.

    Tool use and tool result blocks are rendered as text: after role
    normalization they no longer sit in the positions the API requires.
    """
    if isinstance(msg.content, str):
        return {"role": msg.role, "content": msg.content or EMPTY_CONTENT}

    blocks: list[dict[str, Any]] = []
    for block in msg.content:
        if block.type == "text" and block.text:
            blocks.append({"type": "text", "text": block.text})
        elif block.type == "image" and block.source is not None:
            blocks.append({"type": "image", "source": block.source.model_dump()})
        elif block.type == "tool_use":
            rendered = f"⚡ Tool call {block.name}: {json.dumps(block.input)}"
            blocks.append({"type": "text", "text": rendered})
        elif block.type == "tool_result" and block.content:
            blocks.append({"type": "text", "text": block.content})
    if not blocks:
        blocks.append({"type": "text", "text": EMPTY_CONTENT})
    return {"role": msg.role, "content": blocks}
