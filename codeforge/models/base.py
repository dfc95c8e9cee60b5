"""
Abstract base model interface and the provider-neutral data model.
All adapters must implement `generate_response` and `stream_response`
and emit the StreamChunk vocabulary defined here.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Optional, Union

from pydantic import BaseModel as PydanticModel
from pydantic import ConfigDict, Field

if TYPE_CHECKING:
    from codeforge.models.stream import ChunkStream

CHARS_PER_TOKEN = 4

# StreamChunk types
CONTENT_BLOCK_START = "content_block_start"
CONTENT_BLOCK_DELTA = "content_block_delta"
CONTENT_BLOCK_STOP = "content_block_stop"
TOOL_COMPLETION = "tool_completion"
ERROR = "error"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return max(len(text) // CHARS_PER_TOKEN, 0)


class ImageSource(PydanticModel):
    model_config = ConfigDict(frozen=True)

    type: str = "base64"
    media_type: str = "image/png"
    data: str = ""


class ContentBlock(PydanticModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text", "image", "tool_use", "tool_result"]
    text: str = ""
    source: Optional[ImageSource] = None
    # tool_use
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    # tool_result
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


class Message(PydanticModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system", "tool"]
    content: Union[str, list[ContentBlock]] = ""
    name: Optional[str] = None
    tool_call_id: Optional[str] = None

    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [ContentBlock(type="text", text=self.content)] if self.content else []
        return list(self.content)

    def text_content(self) -> str:
        """Plain text of the message; tool results contribute their content."""
        if isinstance(self.content, str):
            return self.content
        parts = []
        for block in self.content:
            if block.type == "text" and block.text:
                parts.append(block.text)
            elif block.type == "tool_result" and block.content:
                parts.append(block.content)
        return "\n".join(parts)

    def tool_uses(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if b.type == "tool_use"]


class Tool(PydanticModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolCall(PydanticModel):
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    arguments: str = ""  # raw JSON arguments when received in function-call shape


class ToolCompletion(PydanticModel):
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    error: str = ""
    state: Literal["task_start", "start", "error", "complete"] = "complete"
    task_group: str = ""


class StreamChunk(PydanticModel):
    type: str  # content_block_start | content_block_delta | content_block_stop | tool_completion | error
    id: str = ""
    index: int = 0
    text: str = ""
    tool_call: Optional[ToolCall] = None
    tool_input_delta: str = ""
    tool_completion: Optional[ToolCompletion] = None
    error: str = ""


class GenerateRequest(PydanticModel):
    messages: list[Message]
    model: str = ""
    max_tokens: int = 0
    temperature: Optional[float] = None
    tools: list[Tool] = Field(default_factory=list)
    tool_choice: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Response(PydanticModel):
    id: str = ""
    model: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    processing_time_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ModelInfo(PydanticModel):
    id: str
    name: str
    provider: str
    max_tokens: int = 0
    supports_tools: bool = True


class StreamEvent(PydanticModel):
    """Events emitted by the agent loop via SSE."""
    type: str  # "iteration" | "chunk" | "permission_request" | "permission_decision" | "done" | "error" | "cancelled"
    data: Any = None


class BaseModelAdapter(ABC):
    """Unified interface for all LLM providers.

    Adapters hold no per-conversation state and may be shared by
    several conversations at once.
    """

    name: str
    model_name: str

    @abstractmethod
    async def generate_response(self, request: GenerateRequest) -> Response:
        """Single-shot call. Raises a ProviderError subclass on failure."""

    @abstractmethod
    async def stream_response(self, request: GenerateRequest) -> ChunkStream:
        """
        Start a streaming call and return its chunk channel:
          - content_block_start: tool_call with id/name (input still empty)
          - content_block_delta: text, or tool_input_delta (partial JSON)
          - content_block_stop:  end of block index; may carry a finalized tool_call
          - error:               failure after the stream started
        Failures before the first chunk raise a ProviderError subclass.
        """

    @abstractmethod
    def available_models(self) -> list[ModelInfo]:
        ...

    def supports_tool_calling(self) -> bool:
        return True

    def default_model(self) -> str:
        return self.model_name

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    @abstractmethod
    def token_limit(self) -> int:
        ...

    async def close(self) -> None:
        return None
