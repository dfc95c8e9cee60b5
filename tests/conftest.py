"""
Shared pytest fixtures and helpers for all tests.
"""
import tempfile
from pathlib import Path
from typing import Iterator, Union

import pytest

from codeforge.config import ToolsConfig
from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    CONTENT_BLOCK_START,
    CONTENT_BLOCK_STOP,
    BaseModelAdapter,
    GenerateRequest,
    ModelInfo,
    Response,
    StreamChunk,
    ToolCall,
)
from codeforge.models.stream import ChunkStream
from codeforge.tools.base import build_tool_executor


def text_chunks(text: str, index: int = 0) -> list[StreamChunk]:
    """A text block streamed one word at a time."""
    words = text.split(" ")
    chunks = [
        StreamChunk(type=CONTENT_BLOCK_DELTA, index=index, text=w + (" " if i < len(words) - 1 else ""))
        for i, w in enumerate(words)
    ]
    chunks.append(StreamChunk(type=CONTENT_BLOCK_STOP, index=index))
    return chunks


def tool_chunks(call_id: str, name: str, raw_input: str, index: int = 1) -> list[StreamChunk]:
    """A tool_use block whose JSON input arrives in two fragments."""
    half = len(raw_input) // 2
    return [
        StreamChunk(type=CONTENT_BLOCK_START, index=index, tool_call=ToolCall(id=call_id, name=name)),
        StreamChunk(type=CONTENT_BLOCK_DELTA, index=index, tool_input_delta=raw_input[:half]),
        StreamChunk(type=CONTENT_BLOCK_DELTA, index=index, tool_input_delta=raw_input[half:]),
        StreamChunk(type=CONTENT_BLOCK_STOP, index=index),
    ]


Step = Union[list[StreamChunk], Exception]


class ScriptedAdapter(BaseModelAdapter):
    """Adapter that replays one scripted chunk list (or raises) per request."""

    name = "scripted"

    def __init__(self, script: list[Step], token_limit: int = 100_000):
        self.model_name = "scripted-model"
        self.script = list(script)
        self.requests: list[GenerateRequest] = []
        self._token_limit = token_limit

    async def generate_response(self, request: GenerateRequest) -> Response:
        self.requests.append(request)
        return Response(id="resp", model=self.model_name, content="ok")

    async def stream_response(self, request: GenerateRequest) -> ChunkStream:
        self.requests.append(request)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return ChunkStream.from_chunks(step, provider=self.name)

    def available_models(self) -> list[ModelInfo]:
        return [ModelInfo(id=self.model_name, name=self.model_name, provider=self.name)]

    def token_limit(self) -> int:
        return self._token_limit


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """A small project tree."""
    (temp_dir / "src").mkdir()
    (temp_dir / "src" / "main.py").write_text("def main():\n    print('hello')\n\nmain()\n")
    (temp_dir / "src" / "util.py").write_text("def helper():\n    return 42\n")
    (temp_dir / "README.md").write_text("# Demo\n")
    return temp_dir


@pytest.fixture
def tools_config() -> ToolsConfig:
    return ToolsConfig()


@pytest.fixture
def executor(project_dir: Path, tools_config: ToolsConfig):
    return build_tool_executor(project_dir, tools_config)


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set up mock environment variables for testing."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key-123")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key-456")
    return monkeypatch
