"""Turns closed tool-use blocks into tool results.

One tool runs per assistant turn. Mutating tools go through the approval
gate first; a denial skips everything else in the turn. Every result is
pushed onto the turn's user-message content in the order blocks arrive.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from .assistant_message import ToolUse
from .host import AskResponse, TaskHost
from .interrupt import CancellationToken
from .logger import get_logger, log_exception, truncate
from .messages import text_block, tool_result_block
from .repetition_guard import RepetitionGuard, ToolInvocation
from .tool_registry import ToolMetrics, ToolName, get_metrics, get_tool_def
from .tools import WorkspaceTools

log = get_logger("dispatcher")

EMPTY_RESULT = "(tool did not return anything)"
ONE_TOOL_PER_MESSAGE = (
    "Tool [{name}] was not executed because a tool has already been used in this message. "
    "Only one tool may be used per message."
)


class ToolResult(BaseModel):
    """Result of one tool call, as fed back to the model."""

    tool_use_id: str = ""
    content: Union[str, List[Dict[str, Any]]] = ""
    is_error: bool = False

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.get("text", "") for b in self.content if isinstance(b, dict))


@dataclass
class TurnState:
    """Flags and collected results for one assistant turn."""
    did_already_use_tool: bool = False
    did_reject_tool: bool = False
    user_message_content: List[Dict[str, Any]] = field(default_factory=list)
    completion_result: Optional[str] = None
    mistakes: int = 0
    mutated: bool = False
    succeeded: bool = False

    def push_tool_result(self, block: ToolUse, description: str, result: ToolResult,
                         notes: Optional[List[str]] = None) -> None:
        """Record a result; XML calls get text items, native calls a tool_result."""
        body = result.text or EMPTY_RESULT
        items = [text_block(f"{description} Result:"), text_block(body)]
        for note in notes or []:
            items.append(text_block(note))
        if block.tool_use_id:
            self.user_message_content.append(tool_result_block(block.tool_use_id, items, result.is_error))
        else:
            self.user_message_content.extend(items)

    def push_text(self, block: ToolUse, text: str) -> None:
        if block.tool_use_id:
            self.user_message_content.append(tool_result_block(block.tool_use_id, [text_block(text)], True))
        else:
            self.user_message_content.append(text_block(text))


def tool_description(block: ToolUse) -> str:
    p = block.params
    name = block.name
    if name == ToolName.EXECUTE_COMMAND.value:
        return f"[{name} for '{p.get('command', '')}']"
    if name in (ToolName.READ_FILE.value, ToolName.WRITE_TO_FILE.value):
        return f"[{name} for '{p.get('path', '')}']"
    if name == ToolName.LIST_FILES.value:
        return f"[{name} for '{p.get('path') or '.'}']"
    if name == ToolName.SEARCH_FILES.value:
        return f"[{name} for '{p.get('regex', '')}']"
    if name == ToolName.ASK_FOLLOWUP_QUESTION.value:
        return f"[{name} for '{p.get('question', '')}']"
    return f"[{name}]"


ApprovalGate = Callable[[str, str], Awaitable[AskResponse]]
Handler = Callable[["ToolDispatcher", ToolUse, TurnState], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolEntry:
    handler: Handler
    action: str                   # used in "Error {action}: ..."


class ToolDispatcher:
    """Executes tool blocks against a WorkspaceTools surface."""

    def __init__(
        self,
        tools: WorkspaceTools,
        host: Optional[TaskHost] = None,
        guard: Optional[RepetitionGuard] = None,
        auto_approve: Optional[List[str]] = None,
        cancel: Optional[CancellationToken] = None,
        metrics: Optional[ToolMetrics] = None,
    ):
        self.tools = tools
        self.host = host or TaskHost()
        self.guard = guard or RepetitionGuard()
        self.auto_approve = set(auto_approve or [])
        self.cancel = cancel
        self.metrics = metrics or ToolMetrics()

    # ── entry point ──

    async def execute(self, block: ToolUse, turn: TurnState,
                      approval_gate: Optional[ApprovalGate] = None) -> Optional[ToolResult]:
        """Handle one tool-use block. Returns None when nothing was recorded.

        Partial blocks only ever produce skip notices; they are not run.
        """
        description = tool_description(block)

        if turn.did_reject_tool:
            if block.partial:
                text = f"Tool {description} was interrupted and not executed due to user rejecting a previous tool."
            else:
                text = f"Skipping tool {description} due to user rejecting a previous tool."
            turn.push_text(block, text)
            return ToolResult(tool_use_id=block.tool_use_id, content=text, is_error=True)

        if turn.did_already_use_tool:
            text = ONE_TOOL_PER_MESSAGE.format(name=block.name)
            turn.push_text(block, text)
            return ToolResult(tool_use_id=block.tool_use_id, content=text, is_error=True)

        if block.partial:
            return None

        gate = approval_gate or self.ask_approval
        result, notes = await self._run(block, turn, gate)
        turn.push_tool_result(block, description, result, notes)
        turn.did_already_use_tool = True
        return result

    async def _run(self, block: ToolUse, turn: TurnState, gate: ApprovalGate):
        name = ToolName.parse(block.name)
        if name is None:
            log.warning("unknown tool: %s", block.name)
            self._record(block.name, 0.0, False, "unknown tool", 0)
            return self._error(block, f"Unknown tool: {block.name} (not yet implemented)"), []

        tool_def = get_tool_def(name.value)
        missing = [p for p in tool_def.required_params if not block.params.get(p, "").strip()]
        # content may legitimately be empty
        missing = [p for p in missing if not (p == "content" and p in block.params)]
        if missing:
            turn.mistakes += 1
            self._record(block.name, 0.0, False, f"missing parameter: {missing[0]}", 0)
            text = (f"Missing value for required parameter '{missing[0]}'. "
                    f"Please retry with a complete response.")
            await self.host.say("error", f"{block.name}: {text}")
            return self._error(block, f"Error: {text}"), []

        decision = self.guard.check(ToolInvocation(block.name, dict(block.params), block.tool_use_id))
        if not decision.allow:
            answer = await self.host.ask("mistake_limit_reached", decision.reason or "")
            text = decision.reason or "Repeated tool call denied"
            if answer.text:
                await self.host.say("user_feedback", answer.text)
                text += f"\n\nUser guidance: {answer.text}"
            return self._error(block, text), []

        notes: List[str] = []
        if tool_def.mutating and tool_def.group not in self.auto_approve:
            await self.host.say("tool", self._approval_message(block))
            kind = "command" if name is ToolName.EXECUTE_COMMAND else "tool"
            answer = await gate(kind, self._approval_message(block))
            if not answer.approved:
                turn.did_reject_tool = True
                if answer.text:
                    await self.host.say("user_feedback", answer.text)
                    return self._error(block, f"Tool denied with feedback: {answer.text}"), []
                return self._error(block, "Tool denied by user"), []
            if answer.text:
                await self.host.say("user_feedback", answer.text)
                notes.append(f"Tool approved with feedback: {answer.text}")
        else:
            await self.host.say("tool", tool_description(block))

        entry = DISPATCH_TABLE[name]
        t0 = time.time()
        try:
            result = await entry.handler(self, block, turn)
        except Exception as e:
            elapsed = (time.time() - t0) * 1000
            log_exception(log, f"tool {block.name} raised", e)
            self._record(block.name, elapsed, False, str(e), 0)
            text = f"Error {entry.action}: {e}"
            await self.host.say("error", text)
            return self._error(block, text), notes

        elapsed = (time.time() - t0) * 1000
        self._record(block.name, elapsed, not result.is_error,
                     truncate(result.text, 200) if result.is_error else None, len(result.text))
        if not result.is_error:
            turn.succeeded = True
            if tool_def.mutating:
                turn.mutated = True
        return result, notes

    def _record(self, name: str, elapsed_ms: float, success: bool, error: Optional[str], size: int) -> None:
        self.metrics.record(name, elapsed_ms, success, error=error, result_size=size)
        get_metrics().record(name, elapsed_ms, success, error=error, result_size=size)

    @staticmethod
    def _error(block: ToolUse, text: str) -> ToolResult:
        return ToolResult(tool_use_id=block.tool_use_id, content=text, is_error=True)

    @staticmethod
    def _approval_message(block: ToolUse) -> str:
        shown = {k: truncate(v, 500) for k, v in block.params.items()}
        return json.dumps({"tool": block.name, **shown}, ensure_ascii=False, indent=2)

    async def ask_approval(self, kind: str, message: str) -> AskResponse:
        return await self.host.ask(kind, message)

    # ── handlers ──

    def _wrap(self, block: ToolUse, text: str) -> ToolResult:
        return ToolResult(tool_use_id=block.tool_use_id, content=text, is_error=text.startswith("Error:"))

    async def _read_file(self, block, turn):
        return self._wrap(block, await self.tools.read_file(block.params))

    async def _write_to_file(self, block, turn):
        return self._wrap(block, await self.tools.write_to_file(block.params))

    async def _apply_diff(self, block, turn):
        return self._wrap(block, await self.tools.apply_diff(block.params))

    async def _edit_file(self, block, turn):
        return self._wrap(block, await self.tools.edit_file(block.params))

    async def _insert_content(self, block, turn):
        return self._wrap(block, await self.tools.insert_content(block.params))

    async def _search_files(self, block, turn):
        return self._wrap(block, await self.tools.search_files(block.params))

    async def _list_files(self, block, turn):
        return self._wrap(block, await self.tools.list_files(block.params))

    async def _list_code_definition_names(self, block, turn):
        return self._wrap(block, await self.tools.list_code_definition_names(block.params))

    async def _codebase_search(self, block, turn):
        return self._wrap(block, await self.tools.codebase_search(block.params))

    async def _glob(self, block, turn):
        return self._wrap(block, await self.tools.glob(block.params))

    async def _execute_command(self, block, turn):
        return self._wrap(block, await self.tools.execute_command(block.params, cancel=self.cancel))

    async def _update_todo_list(self, block, turn):
        return self._wrap(block, await self.tools.update_todo_list(block.params))

    async def _ask_followup_question(self, block, turn):
        answer = await self.host.ask("followup", block.params.get("question", ""))
        if answer.response == "message":
            await self.host.say("user_feedback", answer.text)
            return ToolResult(tool_use_id=block.tool_use_id,
                              content=f"<answer>\n{answer.text or 'No response provided'}\n</answer>")
        return ToolResult(tool_use_id=block.tool_use_id, content="User declined to answer")

    async def _attempt_completion(self, block, turn):
        result = block.params.get("result") or "Task completed"
        turn.completion_result = result
        await self.host.say("completion_result", result)
        return ToolResult(tool_use_id=block.tool_use_id, content=result)

    async def _new_task(self, block, turn):
        mode = block.params.get("mode", "")
        message = block.params.get("message", "")
        out = await self.host.new_task(mode, message)
        if out is None:
            return ToolResult(tool_use_id=block.tool_use_id,
                              content="Error: new_task is not supported by this host", is_error=True)
        return ToolResult(tool_use_id=block.tool_use_id, content=out or f"Started new task in mode '{mode}'")


DISPATCH_TABLE: Dict[ToolName, ToolEntry] = {
    ToolName.READ_FILE: ToolEntry(ToolDispatcher._read_file, "reading file"),
    ToolName.WRITE_TO_FILE: ToolEntry(ToolDispatcher._write_to_file, "writing file"),
    ToolName.APPLY_DIFF: ToolEntry(ToolDispatcher._apply_diff, "applying diff"),
    ToolName.EDIT_FILE: ToolEntry(ToolDispatcher._edit_file, "editing file"),
    ToolName.INSERT_CONTENT: ToolEntry(ToolDispatcher._insert_content, "inserting content"),
    ToolName.SEARCH_FILES: ToolEntry(ToolDispatcher._search_files, "searching files"),
    ToolName.LIST_FILES: ToolEntry(ToolDispatcher._list_files, "listing files"),
    ToolName.LIST_CODE_DEFINITION_NAMES: ToolEntry(ToolDispatcher._list_code_definition_names,
                                                   "listing code definitions"),
    ToolName.CODEBASE_SEARCH: ToolEntry(ToolDispatcher._codebase_search, "searching codebase"),
    ToolName.GLOB: ToolEntry(ToolDispatcher._glob, "matching files"),
    ToolName.EXECUTE_COMMAND: ToolEntry(ToolDispatcher._execute_command, "executing command"),
    ToolName.UPDATE_TODO_LIST: ToolEntry(ToolDispatcher._update_todo_list, "updating todo list"),
    ToolName.ASK_FOLLOWUP_QUESTION: ToolEntry(ToolDispatcher._ask_followup_question, "asking question"),
    ToolName.ATTEMPT_COMPLETION: ToolEntry(ToolDispatcher._attempt_completion, "completing task"),
    ToolName.NEW_TASK: ToolEntry(ToolDispatcher._new_task, "creating new task"),
}

_unhandled = set(ToolName) - set(DISPATCH_TABLE)
if _unhandled:
    raise RuntimeError(f"tools without a handler: {sorted(t.value for t in _unhandled)}")
