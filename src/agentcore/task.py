"""TaskController: runs one task from the first request to completion.

Each turn streams one backend response. Text deltas are fed to the
parser and every update is pushed onto a presentation queue; a single
worker drains the queue, presenting blocks in order and handing closed
tool blocks to the dispatcher. The stream is cut short as soon as a tool
has run or was rejected, the rest of the turn is skipped.
"""

import asyncio
import re
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional

from .assistant_message import AssistantMessageParser, ContentBlock, TextContent, ToolUse, trim_partial_tag
from .checkpoints import Checkpoint, CheckpointCoordinator
from .config import EngineConfig
from .context_window import ContextWindowManager, estimate_messages_tokens, estimate_tokens
from .cost_tracker import CostTracker
from .errors import ProviderError, TaskAbortedError
from .host import AskResponse, TaskHost
from .interrupt import CancellationToken
from .logger import bind_task, get_logger, log_exception, truncate, unbind_task
from .messages import ConversationMessage, text_block, tool_use_block
from .prompts import get_system_prompt
from .providers import ProviderClient
from .repetition_guard import RepetitionGuard
from .stream_events import StreamError, TextDelta, ToolCallDelta, Usage
from .tool_dispatcher import ToolDispatcher, TurnState
from .tool_registry import function_schemas
from .tools import WorkspaceTools

log = get_logger("task")

INTERRUPTED_BY_FEEDBACK = "\n\n[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL = (
    "\n\n[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)
NO_TOOLS_USED = "No tools were used. Is the task complete, or would you like to continue?"
MISTAKE_LIMIT_MESSAGE = "The assistant has made several consecutive mistakes. Would you like to continue?"
EMPTY_RESPONSE = "The language model did not provide any assistant messages."

_THINKING_OPEN_RE = re.compile(r"<thinking>\s?")
_THINKING_CLOSE_RE = re.compile(r"\s?</thinking>")


class TaskState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    PRESENTING_BLOCKS = "presenting_blocks"
    AWAITING_TOOL_APPROVAL = "awaiting_tool_approval"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


TERMINAL_STATES = (TaskState.COMPLETED, TaskState.ABORTED, TaskState.ERROR)


class TaskController:
    """Owns the conversation and sequences stream, parser, tools and budget."""

    def __init__(
        self,
        config: EngineConfig,
        host: Optional[TaskHost] = None,
        provider=None,
        tools: Optional[WorkspaceTools] = None,
        task_id: Optional[str] = None,
    ):
        self.config = config
        self.task_id = task_id or uuid.uuid4().hex[:8]
        self.host = host or TaskHost()
        self._owns_provider = provider is None
        self.provider = provider or ProviderClient(config)
        self.workspace = Path(config.workspace_path)
        self.tools = tools or WorkspaceTools(self.workspace, command_timeout=config.request_timeout)

        # task-scoped state, never shared between tasks
        self.cancel = CancellationToken()
        self.guard = RepetitionGuard(config.tool_repetition_limit)
        self.cost_tracker = CostTracker()
        self.context_manager = ContextWindowManager(self.provider, self.cost_tracker)
        self.dispatcher = ToolDispatcher(
            self.tools, self.host, self.guard, config.auto_approve, cancel=self.cancel,
        )
        self.checkpoints: Optional[CheckpointCoordinator] = None
        if config.enable_checkpoints:
            self.checkpoints = CheckpointCoordinator(
                self.workspace, self.task_id, self.host, timeout=config.checkpoint_timeout,
            )

        self.system_prompt = get_system_prompt(str(self.workspace))
        self.messages: List[ConversationMessage] = []
        self.state = TaskState.IDLE
        self.consecutive_mistake_count = 0
        self.last_context_tokens = 0
        self.completion_result: Optional[str] = None

        # per-turn
        self.parser = AssistantMessageParser()
        self.turn = TurnState()
        self.assistant_message_content: List[ContentBlock] = []
        self.current_streaming_content_index = 0
        self.did_complete_reading_stream = False
        self.user_message_content_ready = False
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Future] = None

    # ── public API ──

    async def start(self, task: str) -> TaskState:
        """Run the task until it completes, errors or is aborted."""
        log_token = bind_task(self.task_id)
        log.info("task %s start: workspace=%s provider=%s model=%s",
                 self.task_id, self.workspace, self.config.provider, self.config.model)
        self.messages = []
        await self.host.say("text", task)
        try:
            await self._save_checkpoint(force=True)
            await self._loop([text_block(f"<task>\n{task}\n</task>")])
        except TaskAbortedError as e:
            log.info("task %s aborted: %s", self.task_id, e.reason)
            self._set_state(TaskState.ABORTED)
        finally:
            await self._stop_worker()
            if self._owns_provider:
                await self.provider.aclose()
            summary = self.cost_tracker.get_summary()
            log.info("task %s finished: state=%s calls=%d cost=$%.4f",
                     self.task_id, self.state.value, summary.total_calls, summary.total_cost)
            unbind_task(log_token)
        return self.state

    def abort(self, reason: str = "user") -> None:
        """Cancel the in-flight stream and any running command."""
        log.info("task %s abort requested", self.task_id)
        self.cancel.cancel(reason)
        self._set_state(TaskState.ABORTED)

    async def restore_checkpoint(self, commit_hash: str = "HEAD~1") -> bool:
        if self.checkpoints is None:
            return False
        return await self.checkpoints.restore(commit_hash)

    async def checkpoint_diff(self, commit_hash: str = "HEAD") -> Optional[str]:
        if self.checkpoints is None:
            return None
        return await self.checkpoints.diff(commit_hash)

    async def list_checkpoints(self) -> List[str]:
        if self.checkpoints is None:
            return []
        return await self.checkpoints.list()

    # ── state ──

    def _set_state(self, state: TaskState) -> None:
        if self.state == state:
            return
        # terminal states stick
        if self.state in TERMINAL_STATES:
            return
        log.debug("task %s state %s -> %s", self.task_id, self.state.value, state.value)
        self.state = state

    def _check_abort(self) -> None:
        if self.cancel.cancelled:
            raise TaskAbortedError(self.task_id, self.cancel.reason or "user")

    async def _until_cancelled(self, aw: Awaitable) -> Any:
        """Await ``aw`` unless the task is aborted first."""
        job = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self.cancel.wait())
        try:
            done, _ = await asyncio.wait({job, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not stop.done():
                stop.cancel()
        if job in done:
            return job.result()
        job.cancel()
        raise TaskAbortedError(self.task_id, self.cancel.reason or "user")

    async def _ask(self, kind: str, text: str) -> AskResponse:
        return await self._until_cancelled(self.host.ask(kind, text))

    async def _save_checkpoint(self, force: bool = False) -> Optional[Checkpoint]:
        if self.checkpoints is None:
            return None
        return await self.checkpoints.save(force=force, suppress=True)

    # ── main loop ──

    async def _loop(self, user_content: List[Dict[str, Any]]) -> None:
        pending: Optional[List[Dict[str, Any]]] = user_content
        while pending is not None:
            pending = await self._run_turn(pending)

    async def _run_turn(self, user_content: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        """One request/response round. Returns the next user content or None to stop."""
        self._check_abort()

        limit = self.config.consecutive_mistake_limit
        if limit > 0 and self.consecutive_mistake_count >= limit:
            answer = await self._ask("mistake_limit_reached", MISTAKE_LIMIT_MESSAGE)
            if answer.response == "message":
                user_content = list(user_content) + [text_block(answer.text or "Please continue")]
                await self.host.say("user_feedback", answer.text)
                await self._save_checkpoint()
            self.consecutive_mistake_count = 0

        self.messages.append(ConversationMessage(role="user", content=list(user_content)))
        await self._manage_context()

        while True:
            try:
                await self._stream_turn()
                break
            except ProviderError as e:
                await self._stop_worker()
                self._check_abort()
                log.warning("task %s provider error: %s", self.task_id, e)
                await self.host.say("error", f"API request failed: {e}")
                answer = await self._ask("api_req_failed", f"API request failed: {e}. Would you like to retry?")
                if not answer.approved:
                    self._set_state(TaskState.ERROR)
                    return None
                log.info("task %s retrying request", self.task_id)

        return await self._finish_turn()

    async def _manage_context(self) -> None:
        decision = await self.context_manager.decide(
            self.messages,
            self.last_context_tokens,
            self.config.context_window,
            self.config.max_tokens,
            self.config.auto_condense_context,
            self.config.auto_condense_context_percent,
            system_prompt=self.system_prompt,
            task_id=self.task_id,
            profile_thresholds=self.config.profile_thresholds,
            profile_id=self.config.current_profile_id,
            cancel=self.cancel,
        )
        if decision.error:
            await self.host.say("condense", f"Context condensing failed: {decision.error}")
        if decision.action == "condensed":
            self.messages = decision.messages
            self.last_context_tokens = decision.new_context_tokens or 0
            await self.host.say("condense", decision.summary)
        elif decision.action == "truncated":
            removed = len(self.messages) - len(decision.messages)
            self.messages = decision.messages
            self.last_context_tokens = estimate_tokens(self.system_prompt) + estimate_messages_tokens(self.messages)
            await self.host.say("condense", f"Context window full: removed {removed} older messages.")

    def _reset_turn(self) -> None:
        self.parser.reset()
        self.turn = TurnState()
        self.assistant_message_content = []
        self.current_streaming_content_index = 0
        self.did_complete_reading_stream = False
        self.user_message_content_ready = False

    async def _stream_turn(self) -> None:
        """Stream one response, presenting blocks as they close."""
        self._reset_turn()
        self._start_worker()
        self._set_state(TaskState.STREAMING)
        await self.host.say("api_req_started", f"{self.config.provider}:{self.config.model}")

        tools = function_schemas() if self.config.native_tools else None
        interruption = ""
        usage: Optional[Usage] = None
        t0 = time.time()
        stream = self.provider.create_message(self.system_prompt, self.messages, tools, self.cancel)
        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    self.assistant_message_content = self.parser.process_chunk(event.text)
                    self._schedule_presentation()
                elif isinstance(event, ToolCallDelta):
                    if event.complete:
                        self.parser.add_native_tool_call(event)
                        self.assistant_message_content = self.parser.get_content_blocks()
                        self._schedule_presentation()
                elif isinstance(event, Usage):
                    usage = event
                elif isinstance(event, StreamError):
                    raise ProviderError(event.message, provider=self.config.provider)

                self._check_abort()
                if self.turn.did_reject_tool:
                    interruption = INTERRUPTED_BY_FEEDBACK
                    break
                if self.turn.did_already_use_tool:
                    interruption = INTERRUPTED_BY_TOOL
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        self._check_abort()

        if not self.parser.text and not any(isinstance(b, ToolUse) for b in self.parser.get_content_blocks()):
            raise ProviderError(EMPTY_RESPONSE, provider=self.config.provider)

        self._record_usage(usage, t0)

        self.did_complete_reading_stream = True
        self.parser.finalize_content_blocks()
        self.assistant_message_content = self.parser.get_content_blocks()
        self._schedule_presentation()
        await self._until_cancelled(self._queue.join())
        await self._stop_worker()

        content = [text_block(self.parser.text + interruption)]
        for block in self.assistant_message_content:
            if isinstance(block, ToolUse) and block.tool_use_id:
                content.append(tool_use_block(block.tool_use_id, block.name, block.params))
        self.messages.append(ConversationMessage(role="assistant", content=content))

    def _record_usage(self, usage: Optional[Usage], t0: float) -> None:
        if usage is None:
            self.last_context_tokens = (
                estimate_tokens(self.system_prompt)
                + estimate_messages_tokens(self.messages)
                + estimate_tokens(self.parser.text)
            )
            return
        self.cost_tracker.record_call(self.config.model, usage.input_tokens, usage.output_tokens,
                                      (time.time() - t0) * 1000)
        self.last_context_tokens = usage.input_tokens + usage.output_tokens
        log.info("task %s usage: in=%d out=%d", self.task_id, usage.input_tokens, usage.output_tokens)

    async def _finish_turn(self) -> Optional[List[Dict[str, Any]]]:
        turn = self.turn
        self.consecutive_mistake_count += turn.mistakes

        if turn.completion_result is not None:
            self.completion_result = turn.completion_result
            self._set_state(TaskState.COMPLETED)
            return None

        if turn.succeeded and not turn.mistakes:
            self.consecutive_mistake_count = 0

        if turn.mutated:
            await self._save_checkpoint()

        if turn.user_message_content:
            return list(turn.user_message_content)

        answer = await self._ask("followup", NO_TOOLS_USED)
        if answer.response == "message":
            await self.host.say("user_feedback", answer.text)
            await self._save_checkpoint()
            self.consecutive_mistake_count += 1
            return [text_block(answer.text or "Please continue")]
        self._set_state(TaskState.COMPLETED)
        return None

    # ── presentation ──

    def _start_worker(self) -> None:
        self._queue = asyncio.Queue()
        self._worker = asyncio.ensure_future(self._presentation_worker())

    def _schedule_presentation(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(True)

    async def _stop_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        if not worker.done():
            worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _presentation_worker(self) -> None:
        """Single consumer: one pass covers every update queued before it."""
        queue = self._queue
        while True:
            await queue.get()
            coalesced = 1
            while not queue.empty():
                queue.get_nowait()
                coalesced += 1
            try:
                await self._present_blocks()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(log, "presentation pass failed", e)
                self.user_message_content_ready = True
            finally:
                for _ in range(coalesced):
                    queue.task_done()

    async def _present_blocks(self) -> None:
        """Present blocks from the current index until one is still open."""
        while True:
            blocks = self.assistant_message_content
            if self.current_streaming_content_index >= len(blocks):
                if self.did_complete_reading_stream:
                    self.user_message_content_ready = True
                return

            self._set_state(TaskState.PRESENTING_BLOCKS)
            block = blocks[self.current_streaming_content_index]

            if isinstance(block, TextContent):
                if self.turn.did_reject_tool or self.turn.did_already_use_tool:
                    self.current_streaming_content_index += 1
                    continue
                text = _THINKING_OPEN_RE.sub("", block.content)
                text = _THINKING_CLOSE_RE.sub("", text)
                if block.partial:
                    text = trim_partial_tag(text)
                if not block.partial or self.did_complete_reading_stream:
                    if text.strip():
                        await self.host.say("text", text.strip(), partial=block.partial)
                if block.partial:
                    return
                self.current_streaming_content_index += 1
                continue

            skipped = self.turn.did_reject_tool or self.turn.did_already_use_tool
            if not block.partial and not skipped:
                self._set_state(TaskState.EXECUTING_TOOL)
            result = await self.dispatcher.execute(block, self.turn, self._approval_gate)
            if result is None:
                return
            log.debug("task %s tool %s -> error=%s %s", self.task_id, block.name, result.is_error,
                      truncate(result.text, 120))
            self.current_streaming_content_index += 1

    async def _approval_gate(self, kind: str, message: str) -> AskResponse:
        self._set_state(TaskState.AWAITING_TOOL_APPROVAL)
        answer = await self.host.ask(kind, message)
        self._set_state(TaskState.EXECUTING_TOOL if answer.approved else TaskState.PRESENTING_BLOCKS)
        return answer
