import json
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from agentcore.config import EngineConfig
from agentcore.cost_tracker import FALLBACK_PRICE, CostTracker, Price
from agentcore.errors import ConfigError
from agentcore.prompts import get_system_prompt, load_agent_rules
from agentcore.tool_registry import (
    ToolMetrics,
    ToolName,
    TOOL_DEFS,
    function_schema,
    function_schemas,
    get_tool_def,
    get_tool_names,
    is_mutating,
)


# ============================================================
# Config
# ============================================================

class TestEngineConfig:

    def test_from_dict_ignores_unknown_keys(self, tmp_path):
        config = EngineConfig.from_dict({
            "provider": "Qwen",
            "api_key": "k",
            "max_tokens": "4096",
            "profile_thresholds": {"fast": "60"},
            "native_tools": True,
            "something_else": 1,
        }, tmp_path)
        assert config.provider == "qwen"
        assert config.max_tokens == 4096
        assert config.profile_thresholds == {"fast": 60}
        assert config.native_tools
        assert config.workspace_path == tmp_path

    def test_workspace_json_overrides_global(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        home.mkdir()
        (home / ".agentcore.json").write_text(json.dumps({"model": "global-model", "api_key": "g"}))
        ws = tmp_path / "ws"
        (ws / ".agentcore").mkdir(parents=True)
        (ws / ".agentcore" / "config.json").write_text(json.dumps({"model": "ws-model"}))
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))

        config = EngineConfig.from_json(ws)
        assert config.model == "ws-model"
        assert config.api_key == "g"

    def test_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTCORE_API_KEY", "env-key")
        monkeypatch.setenv("AGENTCORE_PROVIDER", "dify")
        monkeypatch.setenv("AGENTCORE_API_URL", "http://dify/v1")
        monkeypatch.setenv("AGENTCORE_AUTO_APPROVE", "edit, command")
        monkeypatch.setenv("AGENTCORE_CHECKPOINTS", "false")
        config = EngineConfig.from_env(tmp_path / "missing.env")
        assert config.api_key == "env-key"
        assert config.provider == "dify"
        assert config.auto_approve == ["edit", "command"]
        assert not config.enable_checkpoints

    def test_validate(self):
        assert EngineConfig(api_url="http://x", api_key="k").validate()
        assert EngineConfig(provider="qwen", api_key="k").validate()
        with pytest.raises(ConfigError):
            EngineConfig(provider="bogus", api_url="http://x", api_key="k").validate()
        with pytest.raises(ConfigError):
            EngineConfig(api_url="http://x").validate()
        with pytest.raises(ConfigError):
            EngineConfig(api_url="http://x", api_key="k", auto_condense_context_percent=2).validate()

    def test_reserved_response_tokens(self):
        assert EngineConfig().reserved_response_tokens == 8192
        assert EngineConfig(max_tokens=1000).reserved_response_tokens == 1000


# ============================================================
# Registry
# ============================================================

class TestRegistry:

    def test_every_name_defined_once(self):
        names = [d.name for d in TOOL_DEFS]
        assert sorted(names) == sorted(ToolName)
        assert len(names) == len(set(names))

    def test_mutating_groups(self):
        assert is_mutating("write_to_file")
        assert is_mutating("execute_command")
        assert not is_mutating("read_file")
        assert not is_mutating("attempt_completion")
        assert not is_mutating("no_such_tool")

    def test_parse_unknown(self):
        assert ToolName.parse("read_file") is ToolName.READ_FILE
        assert ToolName.parse("browser_action") is None

    def test_function_schemas(self):
        schemas = function_schemas(["read"])
        names = {s["function"]["name"] for s in schemas}
        assert "read_file" in names
        assert "attempt_completion" in names
        assert "write_to_file" not in names
        read = next(s for s in schemas if s["function"]["name"] == "read_file")
        assert read["function"]["parameters"]["required"] == ["path"]
        assert function_schema("read_file") == read
        assert function_schema("browser_action") is None

    def test_required_params(self):
        assert get_tool_def("insert_content").required_params == ["path", "line", "content"]

    def test_metrics(self):
        metrics = ToolMetrics(history_size=2)
        metrics.record("read_file", 10.0, True)
        metrics.record("read_file", 30.0, False, error="boom")
        metrics.record("glob", 5.0, True)
        summary = metrics.summary()
        assert summary["total_calls"] == 3
        assert summary["per_tool"]["read_file"]["avg_ms"] == 20.0
        assert summary["per_tool"]["read_file"]["errors"] == 1
        assert len(metrics.recent()) == 2
        assert json.loads(metrics.to_json())["summary"]["total_errors"] == 1


# ============================================================
# Prompt and costs
# ============================================================

class TestSystemPrompt:

    def test_lists_every_tool(self, tmp_path):
        prompt = get_system_prompt(str(tmp_path), shell="bash")
        for name in get_tool_names():
            assert f"## {name}" in prompt
        assert "Default Shell: bash" in prompt

    def test_group_filter(self, tmp_path):
        prompt = get_system_prompt(str(tmp_path), groups=["read"])
        assert "## read_file" in prompt
        assert "## execute_command" not in prompt
        assert "## attempt_completion" in prompt

    def test_agent_rules_appended(self, tmp_path):
        (tmp_path / "agent.md").write_text("Always run pytest.")
        assert load_agent_rules(str(tmp_path)) == "Always run pytest."
        assert "Always run pytest." in get_system_prompt(str(tmp_path))


class TestCostTracker:

    def test_pricing_lookup(self):
        tracker = CostTracker()
        assert tracker.price_for("qwen-max") == Price(1.60, 6.40)
        assert tracker.price_for("QWEN-MAX") == Price(1.60, 6.40)
        assert tracker.price_for("openai/gpt-4o-mini-2024") == Price(0.15, 0.60)
        assert tracker.price_for("mystery") == FALLBACK_PRICE

    def test_custom_price_table(self):
        tracker = CostTracker({"local": Price(0.0, 0.0)})
        assert tracker.record_call("local-7b", 5000, 5000).cost == 0.0
        assert len(tracker) == 1

    def test_summary_by_purpose(self):
        tracker = CostTracker()
        tracker.record_call("qwen-plus", 1_000_000, 0)
        tracker.record_call("qwen-plus", 0, 1_000_000, purpose="condense")
        summary = tracker.get_summary()
        assert summary.total_calls == 2
        assert summary.total_cost == pytest.approx(1.60)
        assert summary.by_purpose["chat"] == pytest.approx(0.40)
        assert summary.by_purpose["condense"] == pytest.approx(1.20)
        text = summary.format_human()
        assert "2 backend call(s)" in text
        assert "condense: $1.2000" in text
        assert len(json.loads(tracker.to_json())) == 2
