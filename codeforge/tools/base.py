"""
Base tool interface and the executor the agent loop calls into.
Each tool exposes a JSON schema for the model and an async `run` method
that returns text or raises ToolError.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from codeforge.config import ToolsConfig
from codeforge.models.base import Tool, ToolCall

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """A tool ran but could not do what was asked."""


class BaseTool(ABC):
    name: str
    description: str
    parameters: dict  # JSON Schema object

    def __init__(self, root: Path, config: ToolsConfig):
        self.root = Path(root).resolve()
        self.config = config

    @abstractmethod
    async def run(self, **kwargs: Any) -> str:
        """Execute the tool and return a string result."""

    def definition(self) -> Tool:
        return Tool(name=self.name, description=self.description, input_schema=self.parameters)


class ToolExecutor:
    """Runs tool calls by name against a fixed tool set."""

    def __init__(self, tools: list[BaseTool]):
        self._tools = {t.name: t for t in tools}

    def definitions(self) -> list[Tool]:
        return [t.definition() for t in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, call: ToolCall) -> tuple[str, Optional[Exception]]:
        """Run a call. Failures are returned, not raised."""
        tool = self._tools.get(call.name)
        if tool is None:
            return "", ToolError(f"unknown tool '{call.name}'")
        try:
            return await tool.run(**call.input), None
        except TypeError as e:
            logger.warning("Bad arguments for %s: %s", call.name, e)
            return "", ToolError(f"invalid arguments for {call.name}: {e}")
        except (ToolError, OSError, ValueError) as e:
            logger.info("Tool %s failed: %s", call.name, e)
            return "", e


def build_tool_executor(root: Path, config: ToolsConfig) -> ToolExecutor:
    """Instantiate the tools enabled in config, confined to `root`."""
    tools: list[BaseTool] = []

    if config.filesystem.enabled:
        from codeforge.tools.filesystem import FILESYSTEM_TOOLS
        tools.extend(cls(root, config) for cls in FILESYSTEM_TOOLS)

    if config.terminal.enabled:
        from codeforge.tools.terminal import TERMINAL_TOOLS
        tools.extend(cls(root, config) for cls in TERMINAL_TOOLS)

    if config.todo.enabled:
        from codeforge.tools.todo import TODO_TOOLS
        tools.extend(cls(root, config) for cls in TODO_TOOLS)

    return ToolExecutor(tools)
