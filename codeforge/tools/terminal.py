"""
Terminal tool: execute shell commands in the project root with timeout and safety checks.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from codeforge.tools.base import BaseTool, ToolError

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 30_000


class BashTool(BaseTool):
    name = "bash"
    description = (
        "Execute a shell command in the project root and return its output (stdout + stderr). "
        "Use for running tests, build tools, git commands, etc."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute"},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (default: from config)",
            },
        },
        "required": ["command"],
    }

    async def run(self, command: str, timeout: int | None = None, **_: Any) -> str:
        cfg = self.config.terminal
        timeout = timeout or cfg.timeout_seconds

        for blocked in cfg.blocked_patterns:
            if blocked.lower() in command.lower():
                raise ToolError(f"command blocked for safety: contains '{blocked}'")

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.root),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolError(f"command timed out after {timeout} seconds")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        output_parts = []
        if stdout:
            output_parts.append(stdout.decode("utf-8", errors="replace").rstrip())
        if stderr:
            output_parts.append(f"[stderr]\n{stderr.decode('utf-8', errors='replace').rstrip()}")

        result = "\n".join(output_parts) if output_parts else "(no output)"
        if len(result) > MAX_OUTPUT_CHARS:
            result = result[:MAX_OUTPUT_CHARS] + "\n... (output truncated)"
        logger.debug("bash exited %s: %s", proc.returncode, command)
        return f"Exit code: {proc.returncode}\n{result}"


TERMINAL_TOOLS: list[type[BaseTool]] = [BashTool]
