"""The task's todo list, replaced wholesale by update_todo_list."""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import List


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


_MARKS = {" ": TodoStatus.PENDING, "": TodoStatus.PENDING, "-": TodoStatus.IN_PROGRESS,
          "~": TodoStatus.IN_PROGRESS, "x": TodoStatus.COMPLETED, "X": TodoStatus.COMPLETED}
_ICONS = {TodoStatus.PENDING: "[ ]", TodoStatus.IN_PROGRESS: "[-]", TodoStatus.COMPLETED: "[x]"}

_LINE_RE = re.compile(r"^\s*(?:[-*]\s+)?\[([ xX~-]?)\]\s*(.+?)\s*$")


@dataclass
class TodoItem:
    content: str
    status: TodoStatus = TodoStatus.PENDING

    def to_dict(self) -> dict:
        return {"content": self.content, "status": self.status.value}

    def format_short(self) -> str:
        return f"{_ICONS[self.status]} {self.content}"


def _status_from_text(value: str) -> TodoStatus:
    value = (value or "").strip().lower().replace("-", "_")
    for status in TodoStatus:
        if status.value == value:
            return status
    if value in ("done", "complete"):
        return TodoStatus.COMPLETED
    return TodoStatus.PENDING


def parse_todos(text: str) -> List[TodoItem]:
    """Parse a markdown checklist or a JSON array of ``{content, status}``."""
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            items = []
            for entry in data:
                if isinstance(entry, dict) and str(entry.get("content", "")).strip():
                    items.append(TodoItem(str(entry["content"]).strip(), _status_from_text(str(entry.get("status", "")))))
                elif isinstance(entry, str) and entry.strip():
                    items.append(TodoItem(entry.strip()))
            return items

    items = []
    for line in stripped.splitlines():
        m = _LINE_RE.match(line)
        if m:
            items.append(TodoItem(m.group(2), _MARKS.get(m.group(1), TodoStatus.PENDING)))
    return items


class TodoList:
    """Holds the current list for one task."""

    def __init__(self):
        self.items: List[TodoItem] = []

    def replace(self, items: List[TodoItem]) -> None:
        self.items = list(items)

    def progress(self) -> str:
        done = sum(1 for i in self.items if i.status == TodoStatus.COMPLETED)
        return f"{done}/{len(self.items)} completed"

    def format_list(self) -> str:
        if not self.items:
            return "(no todos)"
        return "\n".join(i.format_short() for i in self.items)
