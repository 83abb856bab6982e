"""Single source of truth for the tool set.

The parser, the system prompt, the function-calling schemas and the
dispatcher's table all derive from TOOL_DEFS. The set is closed: a name
not listed in ToolName is answered as unknown, never executed.
"""

import json
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

from .logger import get_logger

log = get_logger("registry")


class ToolName(str, Enum):
    EXECUTE_COMMAND = "execute_command"
    READ_FILE = "read_file"
    WRITE_TO_FILE = "write_to_file"
    APPLY_DIFF = "apply_diff"
    EDIT_FILE = "edit_file"
    INSERT_CONTENT = "insert_content"
    SEARCH_FILES = "search_files"
    LIST_FILES = "list_files"
    LIST_CODE_DEFINITION_NAMES = "list_code_definition_names"
    CODEBASE_SEARCH = "codebase_search"
    GLOB = "glob"
    ASK_FOLLOWUP_QUESTION = "ask_followup_question"
    ATTEMPT_COMPLETION = "attempt_completion"
    NEW_TASK = "new_task"
    UPDATE_TODO_LIST = "update_todo_list"

    @classmethod
    def parse(cls, name: str) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


# Every parameter tag the parser recognises inside a tool block.
TOOL_PARAM_NAMES = (
    "command", "path", "content", "line_count", "regex", "file_pattern",
    "recursive", "action", "url", "coordinate", "text", "server_name",
    "tool_name", "arguments", "uri", "question", "result", "diff",
    "mode_slug", "reason", "line", "mode", "message", "cwd", "follow_up",
    "task", "size", "search", "replace", "use_regex", "ignore_case",
    "title", "description", "target_file", "instructions", "code_edit",
    "files", "query", "args", "start_line", "end_line", "todos", "prompt",
    "image",
)


# ── Tool Definition ──────────────────────────────────────────────

@dataclass
class ToolParam:
    """Metadata for a single tool parameter."""
    name: str
    required: bool = False
    description: str = ""
    type: str = "string"


@dataclass
class ToolDef:
    """Canonical definition of a tool."""
    name: ToolName
    group: str = "always"             # read, edit, command, always
    params: List[ToolParam] = field(default_factory=list)
    description: str = ""

    @property
    def mutating(self) -> bool:
        return self.group in MUTATING_GROUPS

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.params if p.required]

    def to_function_schema(self) -> Dict[str, Any]:
        """OpenAI-compatible function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        p.name: {"type": p.type, "description": p.description}
                        for p in self.params
                    },
                    "required": self.required_params,
                },
            },
        }


MUTATING_GROUPS = ("edit", "command")


# ── The Registry ─────────────────────────────────────────────────

TOOL_DEFS: List[ToolDef] = [
    # --- read ---
    ToolDef(ToolName.READ_FILE, group="read",
            description="Read the contents of a file. Output is prefixed with line numbers. "
                        "Use start_line/end_line for large files.",
            params=[ToolParam("path", True, "File path relative to the workspace"),
                    ToolParam("start_line", description="1-based first line to read"),
                    ToolParam("end_line", description="1-based last line to read (inclusive)")]),
    ToolDef(ToolName.SEARCH_FILES, group="read",
            description="Regex search across files in a directory. Returns matching lines with paths and line numbers.",
            params=[ToolParam("path", True, "Directory to search, relative to the workspace"),
                    ToolParam("regex", True, "Regular expression to search for"),
                    ToolParam("file_pattern", description="Glob filter for file names, e.g. '*.py'")]),
    ToolDef(ToolName.LIST_FILES, group="read",
            description="List files and directories. Set recursive to true to walk subdirectories.",
            params=[ToolParam("path", True, "Directory to list ('.' for the workspace root)"),
                    ToolParam("recursive", description="true or false")]),
    ToolDef(ToolName.LIST_CODE_DEFINITION_NAMES, group="read",
            description="List top-level class and function names defined in a source file or directory.",
            params=[ToolParam("path", True, "File or directory relative to the workspace")]),
    ToolDef(ToolName.CODEBASE_SEARCH, group="read",
            description="Find files most relevant to a natural-language query by term matching.",
            params=[ToolParam("query", True, "What to look for"),
                    ToolParam("path", description="Directory to limit the search to")]),
    ToolDef(ToolName.GLOB, group="read",
            description="Find files whose path matches a glob pattern such as '**/*.ts'.",
            params=[ToolParam("file_pattern", True, "Glob pattern"),
                    ToolParam("path", description="Directory to search from")]),

    # --- edit ---
    ToolDef(ToolName.WRITE_TO_FILE, group="edit",
            description="Write a complete file, creating it (and parent directories) or overwriting it. "
                        "Always provide the COMPLETE content.",
            params=[ToolParam("path", True, "File path relative to the workspace"),
                    ToolParam("content", True, "The full file content"),
                    ToolParam("line_count", description="Number of lines in content")]),
    ToolDef(ToolName.APPLY_DIFF, group="edit",
            description="Apply one or more SEARCH/REPLACE blocks to an existing file. "
                        "SEARCH must match the file exactly, including whitespace.",
            params=[ToolParam("path", True, "File path relative to the workspace"),
                    ToolParam("diff", True,
                              "<<<<<<< SEARCH\n:start_line:N\n-------\n[exact text]\n=======\n"
                              "[replacement]\n>>>>>>> REPLACE")]),
    ToolDef(ToolName.EDIT_FILE, group="edit",
            description="Replace one exact, unique occurrence of search with replace in a file "
                        "(or pass SEARCH/REPLACE blocks in diff).",
            params=[ToolParam("path", True, "File path relative to the workspace"),
                    ToolParam("search", description="Exact text to find"),
                    ToolParam("replace", description="Replacement text"),
                    ToolParam("diff", description="SEARCH/REPLACE blocks, as for apply_diff")]),
    ToolDef(ToolName.INSERT_CONTENT, group="edit",
            description="Insert lines before a 1-based line number; line 0 appends to the end.",
            params=[ToolParam("path", True, "File path relative to the workspace"),
                    ToolParam("line", True, "1-based line to insert before, or 0 to append", type="number"),
                    ToolParam("content", True, "Text to insert")]),

    # --- command ---
    ToolDef(ToolName.EXECUTE_COMMAND, group="command",
            description="Run a shell command in the workspace and return its output and exit code.",
            params=[ToolParam("command", True, "The command line to run"),
                    ToolParam("cwd", description="Working directory relative to the workspace")]),

    # --- always available ---
    ToolDef(ToolName.ASK_FOLLOWUP_QUESTION,
            description="Ask the user a question when information is missing.",
            params=[ToolParam("question", True, "The question to ask"),
                    ToolParam("follow_up", description="Suggested answers")]),
    ToolDef(ToolName.ATTEMPT_COMPLETION,
            description="Present the final result once the task is done.",
            params=[ToolParam("result", True, "Summary of the result"),
                    ToolParam("command", description="Optional command that demonstrates the result")]),
    ToolDef(ToolName.NEW_TASK,
            description="Start a new subtask in the given mode with an initial message.",
            params=[ToolParam("mode", True, "Mode slug for the new task"),
                    ToolParam("message", True, "Instructions for the new task")]),
    ToolDef(ToolName.UPDATE_TODO_LIST,
            description="Replace the task's todo list. One item per line: [ ] pending, [-] in progress, [x] done.",
            params=[ToolParam("todos", True, "Markdown checklist of todo items")]),
]

_BY_NAME: Dict[str, ToolDef] = {d.name.value: d for d in TOOL_DEFS}

TOOL_GROUPS: Dict[str, List[str]] = {}
for _d in TOOL_DEFS:
    TOOL_GROUPS.setdefault(_d.group, []).append(_d.name.value)


def get_tool_names() -> List[str]:
    """All tool names, in registry order."""
    return [d.name.value for d in TOOL_DEFS]


def get_tool_def(name: str) -> Optional[ToolDef]:
    return _BY_NAME.get(name)


def is_mutating(name: str) -> bool:
    d = get_tool_def(name)
    return bool(d and d.mutating)


def function_schema(name: str) -> Optional[Dict[str, Any]]:
    d = get_tool_def(name)
    return d.to_function_schema() if d else None


def function_schemas(groups: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """Schemas for the given groups; ``always`` tools are always included."""
    wanted = None if groups is None else set(groups) | {"always"}
    return [d.to_function_schema() for d in TOOL_DEFS if wanted is None or d.group in wanted]


# ── Telemetry ──────────────────────────────────────

@dataclass
class ToolStats:
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    worst_ms: float = 0.0

    def add(self, elapsed_ms: float, success: bool) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        self.worst_ms = max(self.worst_ms, elapsed_ms)
        if not success:
            self.errors += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "errors": self.errors,
            "avg_ms": round(self.total_ms / self.count, 1) if self.count else 0.0,
            "worst_ms": round(self.worst_ms, 1),
        }


@dataclass
class ToolOutcome:
    tool: str
    elapsed_ms: float
    success: bool
    error: Optional[str] = None
    result_size: int = 0


class ToolMetrics:
    """Per-tool counters plus a bounded window of recent outcomes.

    Shared across tasks through ``get_metrics()``, hence the lock.
    """

    def __init__(self, history_size: int = 200):
        self._lock = threading.Lock()
        self._stats: Dict[str, ToolStats] = {}
        self._recent: Deque[ToolOutcome] = deque(maxlen=history_size)

    def record(self, tool_name: str, elapsed_ms: float, success: bool,
               error: Optional[str] = None, result_size: int = 0) -> None:
        with self._lock:
            self._stats.setdefault(tool_name, ToolStats()).add(elapsed_ms, success)
            self._recent.append(ToolOutcome(tool_name, elapsed_ms, success, error, result_size))
        log.debug("%s took %.1fms ok=%s size=%d", tool_name, elapsed_ms, success, result_size)

    def count(self, tool_name: str) -> int:
        with self._lock:
            stats = self._stats.get(tool_name)
            return stats.count if stats else 0

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            per_tool = {name: stats.as_dict() for name, stats in self._stats.items()}
        return {
            "total_calls": sum(s["count"] for s in per_tool.values()),
            "total_errors": sum(s["errors"] for s in per_tool.values()),
            "per_tool": per_tool,
        }

    def recent(self, n: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            outcomes = list(self._recent)[-n:]
        return [asdict(o) for o in outcomes]

    def to_json(self) -> str:
        return json.dumps({"summary": self.summary(), "recent": self.recent()}, indent=2)


_shared_metrics = ToolMetrics()


def get_metrics() -> ToolMetrics:
    """Process-wide metrics, fed by every dispatcher alongside its own instance."""
    return _shared_metrics
