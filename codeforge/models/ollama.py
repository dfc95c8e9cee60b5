"""
Ollama adapter using the native /api/chat endpoint.
Streaming responses are newline-delimited JSON; each line is parsed as
it arrives and malformed lines are skipped.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

import httpx

from codeforge.logging_config import log_timing
from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
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
from codeforge.models.stream import ChunkStream, Emit, new_tool_call_id

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen3:latest"
DEFAULT_TOKEN_LIMIT = 4096
CHAT_PATH = "/api/chat"


def _native_base_url(base_url: str) -> str:
    """Accept the OpenAI-compatible form (.../v1) as well."""
    url = base_url.rstrip("/")
    if url.endswith("/v1"):
        url = url[: -len("/v1")]
    return url


def _to_ollama_messages(messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    for msg in messages:
        entry: dict[str, Any] = {"role": msg.role, "content": msg.text_content()}
        if msg.role == "tool" and msg.name:
            entry["tool_name"] = msg.name

        images = [
            b.source.data
            for b in msg.blocks()
            if b.type == "image" and b.source is not None
        ]
        if images:
            entry["images"] = images

        uses = msg.tool_uses()
        if uses and msg.role == "assistant":
            entry["tool_calls"] = [
                {"function": {"name": b.name, "arguments": b.input}} for b in uses
            ]
        out.append(entry)
    return out


def _to_ollama_tool(tool: Tool) -> dict:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _parse_tool_call(raw: dict) -> Optional[ToolCall]:
    fn = raw.get("function") or {}
    name = fn.get("name")
    if not name:
        return None
    arguments = fn.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Ollama returned unparseable arguments for %s", name)
            arguments = {}
    return ToolCall(id=raw.get("id") or new_tool_call_id(), name=name, input=arguments)


class OllamaAdapter(BaseModelAdapter):
    name = "ollama"

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        models: Optional[list[str]] = None,
        timeout: float = 300.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model_name = model_name
        self._base_url = _native_base_url(base_url)
        self._token_limit = token_limit
        self._models = models or [model_name]
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    def available_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=m, name=m, provider=self.name, max_tokens=self._token_limit)
            for m in self._models
        ]

    def token_limit(self) -> int:
        return self._token_limit

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def build_payload(self, request: GenerateRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self.model_name,
            "messages": _to_ollama_messages(request.messages),
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if options:
            payload["options"] = options
        if request.tools:
            payload["tools"] = [_to_ollama_tool(t) for t in request.tools]
        return payload

    async def generate_response(self, request: GenerateRequest) -> Response:
        payload = self.build_payload(request, stream=False)
        start = time.perf_counter()
        with log_timing(logger, f"ollama {payload['model']} generate"):
            try:
                resp = await self._http.post(self._base_url + CHAT_PATH, json=payload)
            except httpx.HTTPError as e:
                raise TransportError(self.name, str(e) or type(e).__name__) from e

        if resp.status_code != 200:
            raise BackendError(self.name, resp.status_code, resp.text)
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise DecodeError(self.name, "response body", str(e)) from e
        if not isinstance(data, dict):
            raise DecodeError(self.name, "response body", "expected a JSON object")

        message = data.get("message") or {}
        tool_calls = [c for c in (_parse_tool_call(tc) for tc in message.get("tool_calls") or []) if c]
        content = message.get("content") or ""
        return Response(
            id=f"ollama-{int(time.time() * 1000)}",
            model=data.get("model", payload["model"]),
            content=content,
            tool_calls=tool_calls,
            stop_reason=data.get("done_reason") or "stop",
            input_tokens=data.get("prompt_eval_count") or self.estimate_tokens(
                "".join(m["content"] for m in payload["messages"])
            ),
            output_tokens=data.get("eval_count") or self.estimate_tokens(content),
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def stream_response(self, request: GenerateRequest) -> ChunkStream:
        payload = self.build_payload(request, stream=True)
        http_request = self._http.build_request("POST", self._base_url + CHAT_PATH, json=payload)
        try:
            resp = await self._http.send(http_request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(self.name, str(e) or type(e).__name__) from e

        if resp.status_code != 200:
            body = await resp.aread()
            await resp.aclose()
            raise BackendError(self.name, resp.status_code, body.decode(errors="replace"))

        response_id = f"ollama-{int(time.time() * 1000)}"

        async def produce(emit: Emit) -> None:
            await _pump_lines(resp, response_id, emit)

        return ChunkStream(produce, provider=self.name, on_close=resp.aclose)


async def _pump_lines(resp: httpx.Response, response_id: str, emit: Emit) -> None:
    saw_text = False
    tool_index = 0
    async for line in resp.aiter_lines():
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed Ollama line: %r", line[:200])
            continue
        if not isinstance(data, dict):
            continue

        if data.get("error"):
            await emit(StreamChunk(type=ERROR, id=response_id, error=str(data["error"])))
            return

        message = data.get("message") or {}
        content = message.get("content") or ""
        if content:
            saw_text = True
            await emit(StreamChunk(type=CONTENT_BLOCK_DELTA, id=response_id, index=0, text=content))

        for raw in message.get("tool_calls") or []:
            call = _parse_tool_call(raw)
            if call is None:
                continue
            tool_index += 1
            await emit(StreamChunk(type=CONTENT_BLOCK_STOP, id=response_id, index=tool_index, tool_call=call))

        if data.get("done"):
            if saw_text:
                await emit(StreamChunk(type=CONTENT_BLOCK_STOP, id=response_id, index=0))
            return
