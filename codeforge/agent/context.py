"""
Context builder — fits conversation history into a model's token budget.

The system message and the new user turn are always kept. History is kept
as the longest suffix that fits; whatever falls off the front is replaced
by a one-line summary when there is room for it.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from codeforge.models.base import Message, estimate_tokens

logger = logging.getLogger(__name__)

TARGET_RATIO = 0.8
LONG_MESSAGE_CHARS = 200

TOOL_MARKERS = ("✅ Tool", "❌ Tool", "<tool_result", "⚡")
TOOL_RESULT_MARKER = "<tool_result"
SUCCESS_MARKER = "✅"
FILE_EXTENSIONS = (".go", ".js", ".ts", ".py", ".java", ".rs")

DEFAULT_PREAMBLE = (
    "You are CodeForge, an AI coding assistant working inside the user's project. "
    "You can read, search and modify files and run shell commands through the tools "
    "you are given. Read files before changing them, keep edits minimal and "
    "consistent with the existing code, and explain what you did."
)
CLOSING_LINE = (
    "Remember to use tools to read files before making changes, and always "
    "maintain the existing code structure and style."
)


class SessionFacts(BaseModel):
    provider: str = ""
    model: str = ""
    root_path: str = ""
    files: list[str] = Field(default_factory=list)
    memory: str = ""
    system_prompt: str = ""


class ConversationEntry(BaseModel):
    message: Message
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    token_count: int = 0
    importance: float = 0.0
    has_tool_call: bool = False


def message_tokens(message: Message, estimate: Callable[[str], int] = estimate_tokens) -> int:
    """Estimated cost of a message, tool_use names and arguments included."""
    text = message.text_content()
    for block in message.tool_uses():
        text += f"\n{block.name} {json.dumps(block.input)}"
    return estimate(text)


def score_importance(message: Message, position: int, total: int) -> float:
    """Heuristic weight of a message; higher survives in the summary first."""
    text = message.text_content()
    score = 0.4 * (position / total) if total else 0.0
    if message.role == "assistant" and _has_tool_marker(message):
        score += 0.3
    if "error" in text.lower() or "❌" in text:
        score += 0.2
    if TOOL_RESULT_MARKER in text:
        score += 0.3
    if len(text) > LONG_MESSAGE_CHARS:
        score += 0.1
    return score


def _has_tool_marker(message: Message) -> bool:
    if message.tool_uses():
        return True
    text = message.text_content()
    return any(marker in text for marker in TOOL_MARKERS)


class ContextBuilder:
    def __init__(
        self,
        max_tokens: int,
        estimate: Callable[[str], int] = estimate_tokens,
        preamble: str = DEFAULT_PREAMBLE,
    ):
        self.max_tokens = max_tokens
        self.target_tokens = int(max_tokens * TARGET_RATIO)
        self._estimate = estimate
        self._preamble = preamble

    def build(
        self,
        facts: Optional[SessionFacts],
        history: list[Message],
        new_user_text: Optional[str] = None,
    ) -> list[Message]:
        """Assemble [system, pruned history..., new user turn]."""
        if facts is None:
            raise ValueError("cannot build context without session facts")

        system = self.system_message(facts)
        used = message_tokens(system, self._estimate)

        tail: list[Message] = []
        if new_user_text:
            tail.append(Message(role="user", content=new_user_text))
            used += self._estimate(new_user_text)

        kept = self.prune(history, self.target_tokens - used)
        logger.debug(
            "Context: %d/%d history messages kept, budget %d tokens",
            len(kept), len(history), self.target_tokens,
        )
        return [system, *kept, *tail]

    def prune(self, history: list[Message], budget: int) -> list[Message]:
        """Longest suffix of `history` within `budget`, plus a summary if it fits."""
        if not history:
            return []

        entries = self.entries(history)
        used = 0
        start = len(entries)
        for i in range(len(entries) - 1, -1, -1):
            if used + entries[i].token_count > budget:
                break
            used += entries[i].token_count
            start = i

        kept = [e.message for e in entries[start:]]
        if start == 0:
            return kept

        summary = Message(
            role="user",
            content=f"Previous conversation summary: {summarize(entries[:start])}",
        )
        if used + message_tokens(summary, self._estimate) <= budget:
            kept.insert(0, summary)
        return kept

    def entries(self, history: list[Message]) -> list[ConversationEntry]:
        total = len(history)
        return [
            ConversationEntry(
                message=msg,
                token_count=message_tokens(msg, self._estimate),
                importance=score_importance(msg, i, total),
                has_tool_call=_has_tool_marker(msg),
            )
            for i, msg in enumerate(history)
        ]

    def system_message(self, facts: SessionFacts) -> Message:
        prompt = facts.system_prompt or self._preamble
        memory = facts.memory.strip()
        # A memory file written as a full system prompt replaces the preamble
        if memory.startswith("You are"):
            prompt, memory = memory, ""

        parts = [prompt, ""]
        parts.append("Session Info:")
        parts.append(f"- Files in session: {len(facts.files)}")
        parts.append(f"- Provider: {facts.provider}")
        parts.append(f"- Model: {facts.model}")
        parts.append(f"- Root path: {facts.root_path}")
        parts.append("")

        if memory:
            parts.append("Memory System:")
            parts.append(memory)
            parts.append("")

        if facts.files:
            parts.append("Current files in session:")
            parts.extend(f"- {_relative(path, facts.root_path)}" for path in facts.files)
            parts.append("")

        parts.append(CLOSING_LINE)
        return Message(role="system", content="\n".join(parts))


def _relative(path: str, root: str) -> str:
    if not root:
        return os.path.basename(path)
    try:
        return os.path.relpath(path, root)
    except ValueError:
        return os.path.basename(path)


_CATEGORIES = (
    ("file_ops", "successful file operation", "successful file operations"),
    ("files", "file mention", "file mentions"),
    ("errors", "error mention", "error mentions"),
    ("tool_results", "tool result", "tool results"),
)


def summarize(entries: list[ConversationEntry]) -> str:
    """One-line digest of pruned messages, most important category first."""
    counts = {key: 0 for key, _, _ in _CATEGORIES}
    weight = {key: 0.0 for key, _, _ in _CATEGORIES}

    for entry in entries:
        text = entry.message.text_content()
        hits = []
        if entry.message.role == "assistant" and entry.has_tool_call and SUCCESS_MARKER in text:
            hits.append("file_ops")
        if any(ext in text for ext in FILE_EXTENSIONS):
            hits.append("files")
        if "error" in text.lower():
            hits.append("errors")
        if TOOL_RESULT_MARKER in text:
            hits.append("tool_results")
        for key in hits:
            counts[key] += 1
            weight[key] = max(weight[key], entry.importance)

    ranked = sorted(
        (c for c in _CATEGORIES if counts[c[0]]),
        key=lambda c: weight[c[0]],
        reverse=True,
    )
    if not ranked:
        return f"Previous {len(entries)} messages covered general coding discussion"

    points = [
        f"{counts[key]} {singular if counts[key] == 1 else plural}"
        for key, singular, plural in ranked
    ]
    return f"Previous {len(entries)} messages: " + ", ".join(points)
