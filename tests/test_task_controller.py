"""End-to-end tests for TaskController with a scripted backend.

Each fake response is a list of stream events; the controller streams
it, presents blocks, runs tools against a temp workspace and sends the
results back in the next request.
"""

import asyncio
import os
import shutil
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from agentcore.config import EngineConfig
from agentcore.host import AskResponse, TaskHost
from agentcore.messages import content_to_text
from agentcore.stream_events import StreamError, TextDelta, ToolCallDelta, Usage
from agentcore.task import EMPTY_RESPONSE, NO_TOOLS_USED, TaskController, TaskState


def run(coro):
    return asyncio.run(coro)


class ScriptedProvider:
    """Replays one canned response per create_message call."""

    def __init__(self, responses, config=None):
        self.responses = list(responses)
        self.requests = []
        self.config = config

    async def create_message(self, system_prompt, messages, tools=None, cancel=None):
        self.requests.append({"messages": list(messages), "tools": tools})
        events = self.responses.pop(0) if self.responses else []
        for event in events:
            await asyncio.sleep(0)
            yield event

    async def aclose(self):
        pass


class HangingProvider:
    """Never produces anything; stops only when cancelled."""

    async def create_message(self, system_prompt, messages, tools=None, cancel=None):
        while not cancel.cancelled:
            await asyncio.sleep(0.01)
        return
        yield  # pragma: no cover

    async def aclose(self):
        pass


class ScriptedHost(TaskHost):
    """Answers asks per kind from queues; anything unscripted is 'no'."""

    def __init__(self, **answers):
        self.answers = {kind: list(v) for kind, v in answers.items()}
        self.asks = []
        self.says = []

    async def ask(self, kind, text=""):
        self.asks.append((kind, text))
        queue = self.answers.get(kind) or []
        if queue:
            return queue.pop(0)
        return AskResponse(response="no")

    async def say(self, kind, text="", partial=False):
        self.says.append((kind, text))


def _config(tmp_path, **overrides):
    values = dict(api_url="http://test.invalid", api_key="k", model="qwen-plus",
                  workspace_path=tmp_path, enable_checkpoints=False)
    values.update(overrides)
    return EngineConfig(**values)


def _text(*chunks, usage=(100, 20)):
    events = [TextDelta(c) for c in chunks]
    if usage:
        events.append(Usage(input_tokens=usage[0], output_tokens=usage[1], total_tokens=sum(usage)))
    return events


COMPLETE = _text("<attempt_completion>\n<result>All done</result>\n</attempt_completion>")


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "hello.py").write_text("print('hello')\n")
    return tmp_path


# ============================================================
# Happy path
# ============================================================

class TestTaskLoop:

    def test_read_then_complete(self, workspace):
        provider = ScriptedProvider([
            _text("I'll read it.\n<read_", "file>\n<path>hello.py</pa", "th>\n</read_file>"),
            COMPLETE,
        ])
        host = ScriptedHost()
        controller = TaskController(_config(workspace), host, provider=provider)

        state = run(controller.start("Explain hello.py"))

        assert state == TaskState.COMPLETED
        assert controller.completion_result == "All done"
        assert len(provider.requests) == 2
        second_request = provider.requests[1]["messages"]
        tool_results = content_to_text(second_request[-1].content)
        assert "[read_file for 'hello.py'] Result:" in tool_results
        assert "print('hello')" in tool_results
        assert ("text", "I'll read it.") in host.says
        assert ("completion_result", "All done") in host.says

    def test_usage_recorded(self, workspace):
        provider = ScriptedProvider([COMPLETE])
        controller = TaskController(_config(workspace), ScriptedHost(), provider=provider)
        run(controller.start("do it"))
        summary = controller.cost_tracker.get_summary()
        assert summary.total_calls == 1
        assert summary.total_input_tokens == 100
        assert controller.last_context_tokens == 120

    def test_first_request_wraps_task(self, workspace):
        provider = ScriptedProvider([COMPLETE])
        controller = TaskController(_config(workspace), ScriptedHost(), provider=provider)
        run(controller.start("fix the bug"))
        first = provider.requests[0]["messages"][0]
        assert first.role == "user"
        assert content_to_text(first.content) == "<task>\nfix the bug\n</task>"

    def test_only_first_tool_runs(self, workspace):
        two_tools = _text(
            "<read_file><path>hello.py</path></read_file>\n"
            "<write_to_file><path>out.txt</path><content>x</content></write_to_file>"
        )
        provider = ScriptedProvider([two_tools, COMPLETE])
        host = ScriptedHost(tool=[AskResponse(response="yes")])
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("go")) == TaskState.COMPLETED
        assert not (workspace / "out.txt").exists()
        sent = content_to_text(provider.requests[1]["messages"][-1].content)
        assert "Tool [write_to_file] was not executed" in sent
        assert not any(kind == "tool" for kind, _ in host.asks)

    def test_no_tool_asks_followup_then_completes(self, workspace):
        provider = ScriptedProvider([_text("Here is an explanation.")])
        host = ScriptedHost()
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("explain")) == TaskState.COMPLETED
        assert ("followup", NO_TOOLS_USED) in host.asks

    def test_followup_reply_continues(self, workspace):
        provider = ScriptedProvider([_text("Which file?"), COMPLETE])
        host = ScriptedHost(followup=[AskResponse(response="message", text="hello.py")])
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("explain")) == TaskState.COMPLETED
        last = provider.requests[1]["messages"][-1]
        assert content_to_text(last.content) == "hello.py"
        assert controller.consecutive_mistake_count == 1


# ============================================================
# Approval and mistakes
# ============================================================

class TestApprovalFlow:

    def test_denied_edit_is_reported_back(self, workspace):
        provider = ScriptedProvider([
            _text("<write_to_file><path>hello.py</path><content>bad</content></write_to_file>"),
            COMPLETE,
        ])
        host = ScriptedHost(tool=[AskResponse(response="message", text="don't touch it")])
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("edit")) == TaskState.COMPLETED
        assert (workspace / "hello.py").read_text() == "print('hello')\n"
        sent = content_to_text(provider.requests[1]["messages"][-1].content)
        assert "Tool denied with feedback: don't touch it" in sent
        # the assistant message records the interruption
        assistant = provider.requests[1]["messages"][-2]
        assert assistant.role == "assistant"

    def test_auto_approved_edit_runs(self, workspace):
        provider = ScriptedProvider([
            _text("<write_to_file><path>new.txt</path><content>fresh</content></write_to_file>"),
            COMPLETE,
        ])
        host = ScriptedHost()
        controller = TaskController(_config(workspace, auto_approve=["edit"]), host, provider=provider)

        assert run(controller.start("create")) == TaskState.COMPLETED
        assert (workspace / "new.txt").read_text() == "fresh"
        assert host.asks == []

    def test_mistake_limit_asks_user(self, workspace):
        provider = ScriptedProvider([
            _text("<read_file></read_file>"),
            COMPLETE,
        ])
        host = ScriptedHost(mistake_limit_reached=[AskResponse(response="message", text="use a path")])
        controller = TaskController(_config(workspace, consecutive_mistake_limit=1), host, provider=provider)

        assert run(controller.start("read")) == TaskState.COMPLETED
        assert host.asks[0][0] == "mistake_limit_reached"
        sent = content_to_text(provider.requests[1]["messages"][-1].content)
        assert "Missing value for required parameter 'path'" in sent
        assert "use a path" in sent

    def test_successful_tool_resets_mistake_count(self, workspace):
        provider = ScriptedProvider([
            _text("<read_file></read_file>"),
            _text("<read_file><path>hello.py</path></read_file>"),
            _text("<list_files><path>.</path></list_files>"),
            _text("<read_file></read_file>"),
            COMPLETE,
        ])
        host = ScriptedHost()
        controller = TaskController(_config(workspace, consecutive_mistake_limit=2), host, provider=provider)

        assert run(controller.start("look around")) == TaskState.COMPLETED
        assert "mistake_limit_reached" not in [kind for kind, _ in host.asks]
        assert len(provider.requests) == 5
        # only the last bad turn counts
        assert controller.consecutive_mistake_count == 1


# ============================================================
# Errors and abort
# ============================================================

class TestFailures:

    def test_stream_error_retry(self, workspace):
        provider = ScriptedProvider([[StreamError("openai API error 500: oops", 500)], COMPLETE])
        host = ScriptedHost(api_req_failed=[AskResponse(response="yes")])
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("x")) == TaskState.COMPLETED
        assert host.asks[0][0] == "api_req_failed"
        assert len(provider.requests) == 2
        # the failed attempt left no assistant message behind
        assert [m.role for m in provider.requests[1]["messages"]] == ["user"]

    def test_empty_response_declined_is_error(self, workspace):
        provider = ScriptedProvider([[]])
        host = ScriptedHost()
        controller = TaskController(_config(workspace), host, provider=provider)

        assert run(controller.start("x")) == TaskState.ERROR
        kind, text = host.asks[0]
        assert kind == "api_req_failed"
        assert EMPTY_RESPONSE in text

    def test_abort_stops_stream(self, workspace):
        controller = TaskController(_config(workspace), ScriptedHost(), provider=HangingProvider())

        async def scenario():
            asyncio.get_running_loop().call_later(0.1, controller.abort)
            return await controller.start("wait forever")

        assert run(scenario()) == TaskState.ABORTED
        assert controller.cancel.cancelled

    def test_terminal_state_sticks(self, workspace):
        controller = TaskController(_config(workspace), ScriptedHost(), provider=ScriptedProvider([COMPLETE]))
        run(controller.start("x"))
        controller.abort()
        assert controller.state == TaskState.COMPLETED


# ============================================================
# Native tool calls
# ============================================================

class TestNativeTools:

    def test_native_call_round_trip(self, workspace):
        provider = ScriptedProvider([
            [ToolCallDelta(index=0, id="call_1", name="read_file", arguments='{"path": "hello.py"}', complete=True),
             Usage(input_tokens=10, output_tokens=5, total_tokens=15)],
            COMPLETE,
        ])
        controller = TaskController(_config(workspace, native_tools=True), ScriptedHost(), provider=provider)

        assert run(controller.start("read")) == TaskState.COMPLETED
        assert provider.requests[0]["tools"]
        assistant = provider.requests[1]["messages"][-2]
        assert any(b.get("type") == "tool_use" and b.get("id") == "call_1" for b in assistant.content)
        result_msg = provider.requests[1]["messages"][-1]
        assert result_msg.content[0]["type"] == "tool_result"
        assert result_msg.content[0]["tool_use_id"] == "call_1"


# ============================================================
# Checkpoints around edits
# ============================================================

@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestCheckpointIntegration:

    def test_checkpoint_after_mutation(self, workspace):
        provider = ScriptedProvider([
            _text("<write_to_file><path>new.txt</path><content>v1</content></write_to_file>"),
            COMPLETE,
        ])
        controller = TaskController(
            _config(workspace, enable_checkpoints=True, auto_approve=["edit"]),
            ScriptedHost(), provider=provider,
        )
        assert run(controller.start("create")) == TaskState.COMPLETED
        # forced checkpoint at start plus one after the write
        assert len(controller.checkpoints.chain) == 2
        assert run(controller.list_checkpoints())

    def test_diff_and_restore_through_controller(self, workspace):
        provider = ScriptedProvider([
            _text("<write_to_file><path>new.txt</path><content>v1</content></write_to_file>"),
            COMPLETE,
        ])
        host = ScriptedHost(checkpoint_restore=[AskResponse(response="yes")])
        controller = TaskController(
            _config(workspace, enable_checkpoints=True, auto_approve=["edit"]),
            host, provider=provider,
        )
        run(controller.start("create"))

        diff = run(controller.checkpoint_diff("HEAD~1"))
        assert "new.txt" in diff
        assert run(controller.restore_checkpoint("HEAD~1"))
        assert not (workspace / "new.txt").exists()
        assert host.asks[-1][0] == "checkpoint_restore"

    def test_checkpoint_api_without_checkpoints(self, workspace):
        controller = TaskController(_config(workspace), ScriptedHost(), provider=ScriptedProvider([]))
        assert run(controller.restore_checkpoint()) is False
        assert run(controller.checkpoint_diff()) is None
        assert run(controller.list_checkpoints()) == []
