"""Local implementation of the tool surface, rooted at one workspace."""

from pathlib import Path
from typing import Dict, Optional

from ..interrupt import CancellationToken
from ..logger import get_logger, truncate
from . import file_tools, search_tools
from .shell_tools import run_shell_command
from .todo_tools import TodoList, parse_todos

log = get_logger("tools")


class WorkspaceTools:
    """Every handler takes the block's string params and returns text.

    Failures come back as strings starting with ``Error:``; unexpected
    exceptions are left to the dispatcher.
    """

    def __init__(self, workspace: Path, command_timeout: float = 600.0):
        self.workspace = Path(workspace).resolve()
        self.command_timeout = command_timeout
        self.todos = TodoList()

    def _resolve(self, path: str) -> Path:
        p = Path(path or ".")
        if not p.is_absolute():
            p = self.workspace / p
        return p.resolve()

    def _rel(self, p: Path) -> str:
        try:
            return str(p.relative_to(self.workspace)) or "."
        except ValueError:
            return str(p)

    # ── read ──

    async def read_file(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", ""))
        log.debug("read_file: %s start=%s end=%s", path, params.get("start_line"), params.get("end_line"))
        return await file_tools.read_file(path, self._rel(path), params.get("start_line"), params.get("end_line"))

    async def list_files(self, params: Dict[str, str]) -> str:
        raw = params.get("path", ".") or "."
        recursive = params.get("recursive", "").strip().lower() == "true"
        return await search_tools.list_files(self._resolve(raw), raw, recursive)

    async def glob(self, params: Dict[str, str]) -> str:
        return await search_tools.glob_files(self._resolve(params.get("path", ".")),
                                             params.get("file_pattern", "*"), self.workspace)

    async def search_files(self, params: Dict[str, str]) -> str:
        return await search_tools.search_files(self._resolve(params.get("path", ".")), params.get("regex", ""),
                                               params.get("file_pattern"), self.workspace)

    async def codebase_search(self, params: Dict[str, str]) -> str:
        return await search_tools.codebase_search(self._resolve(params.get("path", ".")),
                                                  params.get("query", ""), self.workspace)

    async def list_code_definition_names(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", "."))
        return await search_tools.list_code_definition_names(path, self._rel(path))

    # ── edit ──

    async def write_to_file(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", ""))
        log.info("write_to_file: %s len=%d", path, len(params.get("content", "")))
        return await file_tools.write_to_file(path, self._rel(path), params.get("content", ""))

    async def apply_diff(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", ""))
        log.info("apply_diff: %s diff_len=%d", path, len(params.get("diff", "")))
        return await file_tools.apply_diff(path, self._rel(path), params.get("diff", ""))

    async def edit_file(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", ""))
        if params.get("diff"):
            return await file_tools.apply_diff(path, self._rel(path), params["diff"])
        if "search" not in params:
            return "Error: edit_file needs either <search>/<replace> or <diff>"
        return await file_tools.edit_file(path, self._rel(path), params["search"], params.get("replace", ""))

    async def insert_content(self, params: Dict[str, str]) -> str:
        path = self._resolve(params.get("path", ""))
        return await file_tools.insert_content(path, self._rel(path), params.get("line", ""),
                                               params.get("content", ""))

    # ── command ──

    async def execute_command(self, params: Dict[str, str], cancel: Optional[CancellationToken] = None) -> str:
        command = params.get("command", "")
        if not command.strip():
            return "Error: execute_command requires a non-empty <command> parameter."
        cwd = self._resolve(params.get("cwd", ".")) if params.get("cwd") else self.workspace
        if not cwd.is_dir():
            return f"Error: Working directory not found: {self._rel(cwd)}"
        log.info("execute_command: cwd=%s cmd=%s", cwd, truncate(command, 200))
        result = await run_shell_command(command, cwd=str(cwd), timeout=self.command_timeout, cancel=cancel)
        return result.to_message(command)

    # ── todos ──

    async def update_todo_list(self, params: Dict[str, str]) -> str:
        items = parse_todos(params.get("todos", ""))
        if not items:
            return "Error: no todo items found. Use one '[ ] item' line per todo."
        self.todos.replace(items)
        return f"Todo list updated ({self.todos.progress()}):\n{self.todos.format_list()}"
