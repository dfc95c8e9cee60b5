"""
OpenAI-compatible adapter.
Works with OpenAI and any compatible endpoint (groq, openrouter, together, ...).

Requests are single-shot; `stream_response` replays the completed response
as a word-by-word chunk stream.

Image blocks are converted to OpenAI image_url format:
  {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "..."}}
  -> {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,..."}}
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

import httpx
import openai
from openai import AsyncOpenAI

from codeforge.logging_config import log_timing
from codeforge.models.base import (
    BaseModelAdapter,
    ContentBlock,
    GenerateRequest,
    Message,
    ModelInfo,
    Response,
    Tool,
    ToolCall,
)
from codeforge.models.errors import BackendError, DecodeError, TransportError
from codeforge.models.stream import ChunkStream, new_tool_call_id, synthesize_stream

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4-turbo"
DEFAULT_MODELS = ["gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-4o-mini"]
DEFAULT_TOKEN_LIMIT = 8000


def _convert_content_for_openai(blocks: list[ContentBlock]) -> str | list:
    """
    Convert content blocks to OpenAI-compatible format.

      text        -> {"type": "text", "text": "..."}
      image       -> {"type": "image_url", "image_url": {"url": "data:mime;base64,..."}}
      tool_result -> text block
    tool_use blocks are carried separately as `tool_calls`.
    """
    result: list[dict] = []
    for block in blocks:
        if block.type == "text" and block.text:
            result.append({"type": "text", "text": block.text})

        elif block.type == "image" and block.source is not None:
            if block.source.type == "base64":
                result.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{block.source.media_type};base64,{block.source.data}"},
                })

        elif block.type == "tool_result" and block.content:
            result.append({"type": "text", "text": block.content})

    if not result:
        return ""
    # A single plain-text block goes as a string (better model compatibility)
    if len(result) == 1 and result[0].get("type") == "text":
        return result[0]["text"]
    return result


def _to_openai_messages(messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    known_calls: set[str] = set()

    for msg in messages:
        if msg.role == "system":
            out.append({"role": "system", "content": msg.text_content()})

        elif msg.role == "tool":
            # A result whose call was pruned from context would be rejected
            if msg.tool_call_id and msg.tool_call_id in known_calls:
                out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.text_content()})
            else:
                out.append({"role": "user", "content": msg.text_content()})

        else:
            entry: dict[str, Any] = {"role": msg.role, "content": _convert_content_for_openai(msg.blocks())}
            uses = msg.tool_uses() if msg.role == "assistant" else []
            if uses:
                entry["tool_calls"] = [
                    {
                        "id": b.id,
                        "type": "function",
                        "function": {"name": b.name, "arguments": json.dumps(b.input)},
                    }
                    for b in uses
                ]
                if not entry["content"]:
                    entry["content"] = None
                known_calls.update(b.id for b in uses)
            out.append(entry)

    return out


def _to_openai_tool(tool: Tool) -> dict:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


class OpenAICompatAdapter(BaseModelAdapter):
    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "no-key",
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        models: Optional[list[str]] = None,
        name: str = "openai",
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.model_name = model_name
        self._base_url = base_url
        self._token_limit = token_limit
        self._models = models or DEFAULT_MODELS
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or "no-key",
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
        kwargs: dict[str, Any] = {
            "model": request.model or self.model_name,
            "messages": _to_openai_messages(request.messages),
        }
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = [_to_openai_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            kwargs["tool_choice"] = request.tool_choice
        return kwargs

    async def generate_response(self, request: GenerateRequest) -> Response:
        kwargs = self.build_payload(request)
        start = time.perf_counter()
        with log_timing(logger, f"{self.name} {kwargs['model']} generate"):
            try:
                completion = await self._client.chat.completions.create(**kwargs)
            except openai.APIStatusError as e:
                raise BackendError(self.name, e.status_code, e.response.text) from e
            except openai.APIConnectionError as e:
                raise TransportError(self.name, str(e)) from e
            except openai.APIResponseValidationError as e:
                raise DecodeError(self.name, "response body", str(e)) from e

        if not completion.choices:
            return Response(
                id=completion.id,
                model=completion.model,
                processing_time_ms=int((time.perf_counter() - start) * 1000),
            )

        choice = completion.choices[0]
        tool_calls = []
        for i, tc in enumerate(choice.message.tool_calls or []):
            raw = tc.function.arguments or ""
            try:
                tool_input = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as e:
                raise DecodeError(self.name, f"tool_calls[{i}].function.arguments", str(e)) from e
            if not isinstance(tool_input, dict):
                raise DecodeError(self.name, f"tool_calls[{i}].function.arguments", "expected a JSON object")
            tool_calls.append(ToolCall(
                id=tc.id or new_tool_call_id(),
                name=tc.function.name,
                input=tool_input,
                arguments=raw,
            ))

        usage = completion.usage
        return Response(
            id=completion.id,
            model=completion.model,
            content=choice.message.content or "",
            tool_calls=tool_calls,
            stop_reason=choice.finish_reason or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def stream_response(self, request: GenerateRequest) -> ChunkStream:
        response = await self.generate_response(request)
        return synthesize_stream(response, provider=self.name)
