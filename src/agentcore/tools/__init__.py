"""Default tool surface for a workspace."""

from .file_tools import apply_blocks, parse_search_replace_blocks
from .shell_tools import ShellResult, run_shell_command, terminate_process_tree
from .todo_tools import TodoItem, TodoList, TodoStatus, parse_todos
from .workspace import WorkspaceTools

__all__ = [
    "WorkspaceTools",
    "ShellResult",
    "run_shell_command",
    "terminate_process_tree",
    "apply_blocks",
    "parse_search_replace_blocks",
    "TodoItem",
    "TodoList",
    "TodoStatus",
    "parse_todos",
]
