"""Risk classification and the human-approval gate for tool calls."""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from codeforge.models.base import ToolCall

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Decision(str, Enum):
    APPROVE = "approve"
    APPROVE_ALWAYS = "approve_always"
    DENY = "deny"


LOW_RISK_TOOLS = {"read_file", "list_files", "grep", "find", "todo_read", "todo_write"}
# Everything else, write tools and unknown tools alike, is medium
HIGH_RISK_TOOLS = {"bash"}

SYSTEM_PATH_PATTERNS = ("/etc/", "/bin/", "/sbin/", "/usr/bin/", "/usr/sbin/")
SENSITIVE_FILE_PATTERNS = (".env", ".key", ".pem", ".p12", ".pfx", "passwd", "shadow", "sudoers")

# (pattern, reason) pairs matched against lower-cased shell commands
DANGEROUS_COMMANDS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\brm\s+-rf\b"), "Destructive file operation"),
    (re.compile(r"\bsudo\b"), "Requires elevated privileges"),
    (re.compile(r"(^|[;&|]\s*)su\b"), "Requires elevated privileges"),
    (re.compile(r"\bchmod\s+\+x\b"), "Makes files executable"),
    (re.compile(r"\b(curl|wget)\b"), "Network access"),
    (re.compile(r"\b(npm|pip|go)\s+install\b"), "Installs packages"),
    (re.compile(r"\bdocker\b"), "Container operation"),
    (re.compile(r"\b(systemctl|service)\b"), "Service management"),
    (re.compile(r"\bgit\b.*\b(rebase|reset\s+--hard|push\b.*(--force|\s-f\b)|commit\b.*--amend)"), "Modifies git history"),
)


class RiskAssessment(BaseModel):
    level: RiskLevel
    reasons: list[str] = Field(default_factory=list)


class PermissionDecision(BaseModel):
    decision: Decision
    reason: str = ""
    cached: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def approved(self) -> bool:
        return self.decision != Decision.DENY


class PermissionRequest(BaseModel):
    id: str = Field(default_factory=lambda: f"perm_{uuid.uuid4().hex[:12]}")
    tool_call: ToolCall
    risk_level: RiskLevel
    reasons: list[str] = Field(default_factory=list)
    affected_files: list[str] = Field(default_factory=list)
    prompt: str = ""
    position: int = 1
    total: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Pure helpers ──────────────────────────────────────────────────────────────

def _str_input(call: ToolCall, key: str) -> str:
    value = call.input.get(key)
    return value if isinstance(value, str) else ""


def _target_path(call: ToolCall) -> str:
    return _str_input(call, "file_path") or _str_input(call, "path")


def permission_key(call: ToolCall) -> str:
    """Cache key: tool name plus the file path or command it targets."""
    path = _target_path(call)
    if path:
        return f"{call.name}:{path}"
    command = _str_input(call, "command")
    if command:
        return f"{call.name}:{command}"
    return call.name


def affected_resources(call: ToolCall) -> list[str]:
    resources = []
    path = _target_path(call)
    if path:
        resources.append(path)
    command = _str_input(call, "command")
    if command:
        resources.append(f"command: {command}")
    return resources


def classify(call: ToolCall) -> RiskAssessment:
    """Assign a risk level to a tool call. Pure; safe to call from any task."""
    if call.name in LOW_RISK_TOOLS:
        level = RiskLevel.LOW
    elif call.name in HIGH_RISK_TOOLS:
        level = RiskLevel.HIGH
    else:
        level = RiskLevel.MEDIUM

    reasons: list[str] = []
    path = _target_path(call).lower()
    if path:
        if any(p in path for p in SYSTEM_PATH_PATTERNS):
            reasons.append("Modifying system files")
        if any(p in path for p in SENSITIVE_FILE_PATTERNS):
            reasons.append("Accessing sensitive files")

    command = _str_input(call, "command").lower()
    if command and call.name == "bash":
        for pattern, reason in DANGEROUS_COMMANDS:
            if pattern.search(command) and reason not in reasons:
                reasons.append(reason)

    if call.name == "delete_file":
        reasons.append("File deletion")

    escalating = [r for r in reasons if r != "File deletion"]
    if escalating:
        level = RiskLevel.HIGH
    return RiskAssessment(level=level, reasons=reasons)


def describe_action(call: ToolCall) -> str:
    path = _str_input(call, "file_path")
    if call.name == "read_file":
        return f"Read file '{path}'" if path else "Read a file"
    if call.name == "write_file":
        return f"Write to file '{path}'" if path else "Write to a file"
    if call.name == "edit_file":
        return f"Edit file '{path}'" if path else "Edit a file"
    if call.name == "delete_file":
        return f"Delete file '{path}'" if path else "Delete a file"
    if call.name == "bash":
        command = _str_input(call, "command")
        return f"Run command '{command}'" if command else "Execute a shell command"
    return f"Execute {call.name} tool"


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def describe_details(call: ToolCall) -> str:
    if call.name == "edit_file":
        old, new = _str_input(call, "old_string"), _str_input(call, "new_string")
        if old or new:
            return f"Replace '{_truncate(old, 50)}' with '{_truncate(new, 50)}'"
    if call.name == "bash":
        command = _str_input(call, "command")
        if command:
            return f"Command: {_truncate(command, 100)}"
    return ""


def format_prompt(call: ToolCall, assessment: Optional[RiskAssessment] = None) -> str:
    """Human-readable permission prompt shown by the UI."""
    assessment = assessment or classify(call)
    lines = [f"Permission required: {describe_action(call)}"]
    lines.append(f"Risk: {assessment.level.value.upper()}")
    details = describe_details(call)
    if details:
        lines.append(f"Details: {details}")
    if assessment.reasons:
        lines.append("Warnings: " + ", ".join(assessment.reasons))
    return "\n".join(lines)


# ── Gate ──────────────────────────────────────────────────────────────────────

Listener = Callable[[PermissionRequest], Union[Awaitable[None], None]]


class PermissionGate:
    """
    Per-conversation permission gate.

    Low-risk calls and previously decided keys pass straight through.
    Everything else is queued as a PermissionRequest, published to the
    listener (the UI), and waits for `respond`. Waiters are released in
    arrival order.
    """

    def __init__(
        self,
        bypass_all: bool = False,
        timeout: Optional[float] = None,
        listener: Optional[Listener] = None,
    ):
        """
        Initialize the gate.

        Args:
            bypass_all: Approve every call without classification or caching
            timeout: Seconds to wait for a human decision before denying
            listener: Called with each new PermissionRequest
        """
        self.bypass_all = bypass_all
        self.timeout = timeout
        self.listener = listener
        self._cache: dict[str, PermissionDecision] = {}
        self._queue: deque[PermissionRequest] = deque()
        self._futures: dict[str, asyncio.Future] = {}
        self._released: dict[str, asyncio.Event] = {}

    async def check(self, call: ToolCall) -> PermissionDecision:
        """
        Decide whether a tool call may run, asking the human when needed.

        Args:
            call: The completed tool call

        Returns:
            The decision; `cached` is set when it came from the cache
        """
        if self.bypass_all:
            return PermissionDecision(decision=Decision.APPROVE, reason="all checks bypassed")

        key = permission_key(call)
        cached = self._cache.get(key)
        if cached is not None:
            return cached.model_copy(update={"cached": True})

        assessment = classify(call)
        if assessment.level == RiskLevel.LOW:
            decision = PermissionDecision(decision=Decision.APPROVE, reason="low risk")
            self._cache[key] = decision
            return decision

        request = self._enqueue(call, assessment)
        await self._publish(request)
        return await self._wait(request)

    def respond(self, request_id: str, decision: Decision, reason: str = "user decision") -> bool:
        """
        Deliver the human's decision for a pending request.

        Returns:
            False if the request is unknown or already resolved
        """
        future = self._futures.get(request_id)
        if future is None or future.done():
            logger.warning("Response for unknown permission request %s", request_id)
            return False
        self._resolve(request_id, decision, reason, cache=True)
        return True

    def current(self) -> Optional[PermissionRequest]:
        """The request the UI should be showing, if any."""
        for request in self._queue:
            if not self._futures[request.id].done():
                return self._with_position(request)
        return None

    def pending(self) -> list[PermissionRequest]:
        return [self._with_position(r) for r in self._queue if not self._futures[r.id].done()]

    def cancel_pending(self) -> int:
        """Deny every unresolved request without caching. Returns how many."""
        count = 0
        for request in list(self._queue):
            if not self._futures[request.id].done():
                self._resolve(request.id, Decision.DENY, "cancelled", cache=False)
                count += 1
        return count

    def cached_decision(self, call: ToolCall) -> Optional[PermissionDecision]:
        return self._cache.get(permission_key(call))

    # ── internals ────────────────────────────────────────────────────────────

    def _enqueue(self, call: ToolCall, assessment: RiskAssessment) -> PermissionRequest:
        request = PermissionRequest(
            tool_call=call,
            risk_level=assessment.level,
            reasons=assessment.reasons,
            affected_files=affected_resources(call),
            prompt=format_prompt(call, assessment),
        )
        self._queue.append(request)
        self._futures[request.id] = asyncio.get_running_loop().create_future()
        self._released[request.id] = asyncio.Event()
        logger.info(
            "Permission requested for %s (%s risk), %d pending",
            call.name, assessment.level.value, len(self._queue),
        )
        return request

    async def _publish(self, request: PermissionRequest) -> None:
        if self.listener is None:
            return
        result = self.listener(self._with_position(request))
        if inspect.isawaitable(result):
            await result

    async def _wait(self, request: PermissionRequest) -> PermissionDecision:
        released = self._released[request.id]
        try:
            try:
                await asyncio.wait_for(released.wait(), self.timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Permission request %s for %s timed out after %ss",
                    request.id, request.tool_call.name, self.timeout,
                )
                self._resolve(request.id, Decision.DENY, "timed out", cache=False)
                await released.wait()
        except asyncio.CancelledError:
            if not self._futures[request.id].done():
                self._resolve(request.id, Decision.DENY, "cancelled", cache=False)
            if all(r.id != request.id for r in self._queue):
                self._futures.pop(request.id, None)
            raise
        finally:
            self._released.pop(request.id, None)
        return self._futures.pop(request.id).result()

    def _resolve(self, request_id: str, decision: Decision, reason: str, cache: bool) -> None:
        request = next(r for r in self._queue if r.id == request_id)
        outcome = PermissionDecision(decision=decision, reason=reason)
        if cache:
            self._cache[permission_key(request.tool_call)] = outcome
        self._futures[request_id].set_result(outcome)
        logger.info("Permission %s for %s: %s", request_id, request.tool_call.name, decision.value)
        self._drain()

    def _drain(self) -> None:
        """Release resolved requests from the front of the queue, in order."""
        while self._queue and self._futures[self._queue[0].id].done():
            request = self._queue.popleft()
            event = self._released.get(request.id)
            if event is not None:
                event.set()
            else:
                self._futures.pop(request.id, None)

    def _with_position(self, request: PermissionRequest) -> PermissionRequest:
        unresolved = [r for r in self._queue if not self._futures[r.id].done()]
        position = next((i + 1 for i, r in enumerate(unresolved) if r.id == request.id), 1)
        return request.model_copy(update={"position": position, "total": len(unresolved)})
