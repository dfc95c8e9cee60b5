"""
Todo tools: a per-project task list the model keeps while it works.
The list lives in a JSON file under the project root and is replaced
wholesale on every write.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, ValidationInfo, field_validator

from codeforge.tools.base import BaseTool, ToolError

logger = logging.getLogger(__name__)

Status = Literal["pending", "in_progress", "completed", "canceled"]
Priority = Literal["high", "medium", "low"]

STATUS_ORDER = ("in_progress", "pending", "completed", "canceled")
PRIORITY_ORDER = ("high", "medium", "low")
STATUS_LABELS = {
    "in_progress": "In Progress",
    "pending": "Pending",
    "completed": "Completed",
    "canceled": "Canceled",
}
PRIORITY_MARKERS = {"high": "▸", "medium": "•", "low": "▫"}
EMPTY_LIST = "No todos found. Use todo_write to create some!"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TodoInput(BaseModel):
    id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    status: Status = "pending"
    priority: Priority = "medium"

    @field_validator("status", "priority", mode="before")
    @classmethod
    def _blank_is_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value == "" or value is None:
            return cls.model_fields[info.field_name].default
        return value


class TodoItem(TodoInput):
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None


_inputs = TypeAdapter(list[TodoInput])
_items = TypeAdapter(list[TodoItem])


def merge_todos(existing: list[TodoItem], incoming: list[TodoInput], now: Optional[datetime] = None) -> list[TodoItem]:
    """
    Build the new list from `incoming`, keeping timestamps of known ids.

    created_at survives from the previous item with the same id.
    completed_at is stamped when an item first becomes completed and
    cleared if it is reopened.
    """
    now = now or _now()
    previous = {item.id: item for item in existing}
    merged = []
    for todo in incoming:
        old = previous.get(todo.id)
        completed_at = None
        if todo.status == "completed":
            completed_at = old.completed_at if old and old.status == "completed" and old.completed_at else now
        merged.append(TodoItem(
            **todo.model_dump(),
            created_at=old.created_at if old else now,
            updated_at=now,
            completed_at=completed_at,
        ))
    return merged


def format_todos(items: list[TodoItem]) -> str:
    if not items:
        return EMPTY_LIST

    ordered = sorted(items, key=lambda i: (STATUS_ORDER.index(i.status), PRIORITY_ORDER.index(i.priority)))
    lines = ["📋 Todo List:", ""]
    for status in STATUS_ORDER:
        group = [i for i in ordered if i.status == status]
        if not group:
            continue
        lines.append(f"{STATUS_LABELS[status]}:")
        for item in group:
            stamp = (item.completed_at or item.created_at).strftime("%m/%d")
            lines.append(f"  {PRIORITY_MARKERS[item.priority]} {item.content} [{item.id[:8]}] ({stamp})")
        lines.append("")

    lines.append(summary_line(items))
    return "\n".join(lines)


def summary_line(items: list[TodoItem]) -> str:
    pending = sum(1 for i in items if i.status == "pending")
    completed = sum(1 for i in items if i.status == "completed")
    return f"Summary: {len(items)} total, {pending} pending, {completed} completed"


class _TodoTool(BaseTool):
    @property
    def store(self) -> Path:
        return self.root / self.config.todo.file

    def load(self) -> list[TodoItem]:
        if not self.store.exists():
            return []
        try:
            return _items.validate_json(self.store.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ToolError(f"failed to parse todo file {self.config.todo.file}: {e.error_count()} invalid entries")

    def save(self, items: list[TodoItem]) -> None:
        self.store.parent.mkdir(parents=True, exist_ok=True)
        self.store.write_text(_items.dump_json(items, indent=2).decode(), encoding="utf-8")


class TodoReadTool(_TodoTool):
    name = "todo_read"
    description = "Show the current todo list for this project, grouped by status."
    parameters = {"type": "object", "properties": {}}

    async def run(self, **_: Any) -> str:
        return format_todos(self.load())


class TodoWriteTool(_TodoTool):
    name = "todo_write"
    description = (
        "Replace the todo list for this project. Send every item you want to keep; "
        "items left out are removed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "todos": {
                "type": "string",
                "description": (
                    "JSON array of todo items, each with 'id', 'content', "
                    "'status' (pending, in_progress, completed, canceled) "
                    "and 'priority' (high, medium, low)"
                ),
            },
        },
        "required": ["todos"],
    }

    async def run(self, todos: Union[str, list], **_: Any) -> str:
        try:
            if isinstance(todos, str):
                incoming = _inputs.validate_json(todos)
            else:
                incoming = _inputs.validate_python(todos)
        except ValidationError as e:
            error = e.errors()[0]
            where = ".".join(str(part) for part in error["loc"])
            raise ToolError(f"invalid todos ({where}): {error['msg']}" if where else f"invalid todos: {error['msg']}")

        items = merge_todos(self.load(), incoming)
        self.save(items)
        logger.debug("Saved %d todos to %s", len(items), self.store)
        return f"✅ Updated todo list. {summary_line(items)}"


TODO_TOOLS: list[type[BaseTool]] = [TodoReadTool, TodoWriteTool]
