"""
Agent execution loop.
Runs one user turn: context → model stream → permission-gated tool calls →
follow-up requests, publishing StreamEvents for the frontend.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable, Optional

from codeforge.agent.context import ContextBuilder, SessionFacts
from codeforge.agent.permissions import PermissionGate, PermissionRequest
from codeforge.models.base import (
    CONTENT_BLOCK_DELTA,
    ERROR,
    TOOL_COMPLETION,
    BaseModelAdapter,
    ContentBlock,
    GenerateRequest,
    Message,
    StreamChunk,
    StreamEvent,
    ToolCall,
    ToolCompletion,
)
from codeforge.models.errors import ProviderError
from codeforge.models.stream import ChunkAssembler
from codeforge.tools.base import ToolExecutor

logger = logging.getLogger(__name__)

EMPTY_STREAM_FALLBACK = "I received your message but didn't generate a response. Please try again."

Emit = Callable[[Optional[StreamEvent]], None]


class TurnInProgressError(RuntimeError):
    """A conversation accepts one turn at a time."""


_TOOL_KINDS = {
    "read_file": "read",
    "write_file": "edit", "edit_file": "edit", "delete_file": "edit",
    "bash": "run",
    "grep": "search", "find": "search", "list_files": "search",
    "todo_read": "todo", "todo_write": "todo",
}


def task_group_name(tool_calls: list[ToolCall]) -> str:
    """Descriptive label for the tool calls of one assistant turn."""
    if not tool_calls:
        return "Task"
    kinds = {_TOOL_KINDS.get(c.name, "other") for c in tool_calls}

    if "search" in kinds and "read" in kinds:
        return "Find and analyze code"
    if "edit" in kinds and "run" in kinds:
        return "Modify and test code"
    if "run" in kinds:
        return "Execute commands"
    if "edit" in kinds:
        return "Modify files"
    if "search" in kinds:
        return "Search codebase"
    if "read" in kinds:
        return "Analyze files"
    return "Multiple operations"


def format_tool_result(call: ToolCall, result: str, error: Optional[str] = None) -> str:
    if error is not None:
        return f'<tool_result tool="{call.name}" tool_id="{call.id}" error="true">\nError: {error}\n</tool_result>'
    return f'<tool_result tool="{call.name}" tool_id="{call.id}">\n{result}\n</tool_result>'


def _lifecycle(call: ToolCall, state: str, group: str, result: str = "", error: str = "") -> StreamEvent:
    chunk = StreamChunk(
        type=TOOL_COMPLETION,
        id=call.id,
        tool_completion=ToolCompletion(
            tool_name=call.name,
            args=call.input,
            result=result,
            error=error,
            state=state,
            task_group=group,
        ),
    )
    return StreamEvent(type="chunk", data=chunk)


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.wait(pending)


class Orchestrator:
    """Owns one conversation's history and permission cache and runs its turns."""

    def __init__(
        self,
        adapter: BaseModelAdapter,
        gate: PermissionGate,
        tools: ToolExecutor,
        facts: SessionFacts,
        *,
        history: Optional[list[Message]] = None,
        max_tokens: int = 4096,
        temperature: Optional[float] = None,
        max_iterations: int = 20,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self.adapter = adapter
        self.gate = gate
        self.tools = tools
        self.facts = facts
        self.history: list[Message] = list(history or [])
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self._builder = context_builder or ContextBuilder(adapter.token_limit())
        self._turn: Optional[asyncio.Task] = None
        self._emit: Optional[Emit] = None
        self.gate.listener = self._on_permission_request

    @property
    def busy(self) -> bool:
        return self._turn is not None and not self._turn.done()

    async def run_turn(self, text: str) -> AsyncIterator[StreamEvent]:
        """
        Run one user turn, yielding events until it finishes.

        Closing the iterator early cancels the turn.
        """
        if self.busy:
            raise TurnInProgressError("a turn is already running for this conversation")

        events: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._drive(text, events.put_nowait))
        self._turn = task
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                yield event
        finally:
            await _cancel_all([task])
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def cancel(self) -> bool:
        """Cancel the running turn and deny its pending permission requests."""
        denied = self.gate.cancel_pending()
        task = self._turn
        if task is None or task.done():
            return denied > 0
        await _cancel_all([task])
        return True

    def _on_permission_request(self, request: PermissionRequest) -> None:
        if self._emit is not None:
            self._emit(StreamEvent(type="permission_request", data=request))

    async def _drive(self, text: str, emit: Emit) -> None:
        self._emit = emit
        try:
            messages = self._builder.build(self.facts, self.history, text)
            self.history.append(Message(role="user", content=text))

            for iteration in range(self.max_iterations):
                emit(StreamEvent(type="iteration", data={"n": iteration + 1}))
                if iteration:
                    messages = self._builder.build(self.facts, self.history)

                outcome = await self._stream_once(messages, emit)
                if outcome is None:
                    return
                tool_calls, gates = outcome
                if not tool_calls:
                    emit(StreamEvent(type="done", data={"iterations": iteration + 1}))
                    return
                await self._run_tools(tool_calls, gates, emit)

            emit(StreamEvent(type="error", data={"message": f"Max iterations ({self.max_iterations}) reached"}))
        except asyncio.CancelledError:
            self.gate.cancel_pending()
            emit(StreamEvent(type="cancelled"))
            raise
        finally:
            self._emit = None
            emit(None)

    async def _stream_once(
        self, messages: list[Message], emit: Emit
    ) -> Optional[tuple[list[ToolCall], dict[str, asyncio.Task]]]:
        request = GenerateRequest(
            messages=messages,
            model=self.facts.model or self.adapter.default_model(),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            tools=self.tools.definitions() if self.adapter.supports_tool_calling() else [],
        )
        try:
            stream = await self.adapter.stream_response(request)
        except ProviderError as e:
            logger.error("Request to %s failed: %s", self.adapter.name, e)
            emit(StreamEvent(type="error", data={"message": str(e)}))
            return None

        assembler = ChunkAssembler()
        gates: dict[str, asyncio.Task] = {}
        try:
            async with stream:
                async for chunk in stream:
                    completed = assembler.feed(chunk)
                    if chunk.type == ERROR:
                        break
                    emit(StreamEvent(type="chunk", data=chunk))
                    # Ask for permission while the model is still streaming
                    for call in completed:
                        gates[call.id] = asyncio.create_task(self.gate.check(call))
            for call in assembler.finish():
                gates[call.id] = asyncio.create_task(self.gate.check(call))
        except BaseException:
            await _cancel_all(gates.values())
            raise

        if assembler.error is not None:
            await _cancel_all(gates.values())
            logger.error("Stream from %s failed: %s", self.adapter.name, assembler.error)
            emit(StreamEvent(type="error", data={"message": assembler.error}))
            return None

        text = assembler.text
        if assembler.chunk_count == 0:
            text = EMPTY_STREAM_FALLBACK
            emit(StreamEvent(type="chunk", data=StreamChunk(type=CONTENT_BLOCK_DELTA, text=text)))

        self.history.append(self._assistant_message(text, assembler.tool_calls))
        return assembler.tool_calls, gates

    async def _run_tools(self, calls: list[ToolCall], gates: dict[str, asyncio.Task], emit: Emit) -> None:
        group = task_group_name(calls) if len(calls) > 1 else ""
        if group:
            header = ToolCall(name="task_group", input={"task_name": group})
            emit(_lifecycle(header, "task_start", group))

        answered: set[str] = set()
        try:
            for call in calls:
                decision = await gates[call.id]
                emit(StreamEvent(
                    type="permission_decision",
                    data={
                        "tool_call_id": call.id,
                        "tool_name": call.name,
                        "decision": decision.decision.value,
                        "reason": decision.reason,
                        "cached": decision.cached,
                    },
                ))

                if not decision.approved:
                    notice = f"Permission denied for {call.name} ({decision.reason})"
                    emit(_lifecycle(call, "error", group, error=notice))
                    self.history.append(self._tool_message(call, format_tool_result(call, "", notice)))
                    answered.add(call.id)
                    continue

                emit(_lifecycle(call, "start", group))
                result, error = await self.tools.execute(call)
                if error is not None:
                    emit(_lifecycle(call, "error", group, result=result, error=str(error)))
                    content = format_tool_result(call, result, str(error))
                else:
                    emit(_lifecycle(call, "complete", group, result=result))
                    content = format_tool_result(call, result)
                self.history.append(self._tool_message(call, content))
                answered.add(call.id)
        except asyncio.CancelledError:
            # Every tool_use in history needs a matching result
            for call in calls:
                if call.id not in answered:
                    self.history.append(self._tool_message(call, format_tool_result(call, "", "cancelled")))
            raise
        finally:
            await _cancel_all(gates.values())

    @staticmethod
    def _assistant_message(text: str, tool_calls: list[ToolCall]) -> Message:
        if not tool_calls:
            return Message(role="assistant", content=text)
        blocks = [ContentBlock(type="text", text=text)] if text else []
        blocks.extend(
            ContentBlock(type="tool_use", id=c.id, name=c.name, input=c.input) for c in tool_calls
        )
        return Message(role="assistant", content=blocks)

    @staticmethod
    def _tool_message(call: ToolCall, content: str) -> Message:
        return Message(role="tool", content=content, tool_call_id=call.id, name=call.name)
