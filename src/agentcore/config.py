"""Configuration management for the engine."""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from dotenv import load_dotenv

from .errors import ConfigError

PROVIDERS = ("openai", "qwen", "aiproxy", "dify")


def get_global_config_path() -> Path:
    """Get path to global config: ~/.agentcore.json"""
    return Path.home() / ".agentcore.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.agentcore/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".agentcore" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class EngineConfig:
    """Settings for one task engine: backend, budgets and safety limits."""

    provider: str = "openai"
    api_url: str = ""
    api_key: str = ""
    model: str = "qwen-plus"
    temperature: float = 0.7
    max_tokens: Optional[int] = None  # reserved for the response; None -> 8192
    context_window: int = 128000
    workspace_path: Path = field(default_factory=lambda: Path.cwd())

    # Context condensing
    auto_condense_context: bool = True
    auto_condense_context_percent: int = 100
    profile_thresholds: Dict[str, int] = field(default_factory=dict)
    current_profile_id: str = "default"

    # Loop safety
    tool_repetition_limit: int = 3
    consecutive_mistake_limit: int = 3

    # Checkpoints
    enable_checkpoints: bool = True
    checkpoint_timeout: int = 30

    # Tool groups approved without asking ("edit", "command")
    auto_approve: List[str] = field(default_factory=list)
    # Also send function-calling schemas (for backends that support them)
    native_tools: bool = False

    # HTTP
    request_timeout: float = 600.0
    connect_timeout: float = 30.0
    max_retries: int = 3

    # Provider specific
    aiproxy_username: str = ""
    aiproxy_password: str = ""
    aiproxy_provider: str = "qwen"
    dify_user: str = "agentcore"

    @classmethod
    def from_dict(cls, data: dict, workspace: Optional[Path] = None) -> "EngineConfig":
        """Build a config from a plain dict, ignoring unknown keys."""
        defaults = cls()
        max_tokens = data.get("max_tokens")
        return cls(
            provider=str(data.get("provider", defaults.provider)).lower(),
            api_url=data.get("api_url", ""),
            api_key=data.get("api_key", ""),
            model=data.get("model", defaults.model),
            temperature=float(data.get("temperature", defaults.temperature)),
            max_tokens=int(max_tokens) if max_tokens else None,
            context_window=int(data.get("context_window", defaults.context_window)),
            workspace_path=workspace or Path.cwd(),
            auto_condense_context=bool(data.get("auto_condense_context", True)),
            auto_condense_context_percent=int(
                data.get("auto_condense_context_percent", defaults.auto_condense_context_percent)
            ),
            profile_thresholds={
                str(k): int(v) for k, v in (data.get("profile_thresholds") or {}).items()
            },
            current_profile_id=data.get("current_profile_id", defaults.current_profile_id),
            tool_repetition_limit=int(data.get("tool_repetition_limit", defaults.tool_repetition_limit)),
            consecutive_mistake_limit=int(
                data.get("consecutive_mistake_limit", defaults.consecutive_mistake_limit)
            ),
            enable_checkpoints=bool(data.get("enable_checkpoints", True)),
            checkpoint_timeout=int(data.get("checkpoint_timeout", defaults.checkpoint_timeout)),
            auto_approve=list(data.get("auto_approve") or []),
            native_tools=bool(data.get("native_tools", False)),
            request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
            connect_timeout=float(data.get("connect_timeout", defaults.connect_timeout)),
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            aiproxy_username=data.get("aiproxy_username", ""),
            aiproxy_password=data.get("aiproxy_password", ""),
            aiproxy_provider=data.get("aiproxy_provider", defaults.aiproxy_provider),
            dify_user=data.get("dify_user", defaults.dify_user),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "EngineConfig":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.agentcore.json (global)
        2. workspace/.agentcore/config.json (workspace-specific)
        """
        config_data = {}
        config_data.update(load_json_config(get_global_config_path()))
        config_data.update(load_json_config(get_workspace_config_path(workspace)))
        return cls.from_dict(config_data, workspace)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "EngineConfig":
        """Load configuration from environment variables, falling back to JSON."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        api_key = os.getenv("AGENTCORE_API_KEY", "")
        workspace = Path(os.getenv("AGENTCORE_WORKSPACE", str(Path.cwd())))
        if not api_key:
            return cls.from_json(workspace)

        max_tokens = os.getenv("AGENTCORE_MAX_TOKENS", "")
        return cls(
            provider=os.getenv("AGENTCORE_PROVIDER", "openai").lower(),
            api_url=os.getenv("AGENTCORE_API_URL", ""),
            api_key=api_key,
            model=os.getenv("AGENTCORE_MODEL", "qwen-plus"),
            temperature=float(os.getenv("AGENTCORE_TEMPERATURE", "0.7")),
            max_tokens=int(max_tokens) if max_tokens else None,
            context_window=int(os.getenv("AGENTCORE_CONTEXT_WINDOW", "128000")),
            workspace_path=workspace,
            auto_condense_context=_env_bool("AGENTCORE_AUTO_CONDENSE", True),
            auto_condense_context_percent=int(os.getenv("AGENTCORE_CONDENSE_PERCENT", "100")),
            tool_repetition_limit=int(os.getenv("AGENTCORE_REPETITION_LIMIT", "3")),
            consecutive_mistake_limit=int(os.getenv("AGENTCORE_MISTAKE_LIMIT", "3")),
            enable_checkpoints=_env_bool("AGENTCORE_CHECKPOINTS", True),
            auto_approve=_env_list("AGENTCORE_AUTO_APPROVE"),
            native_tools=_env_bool("AGENTCORE_NATIVE_TOOLS", False),
            max_retries=int(os.getenv("AGENTCORE_MAX_RETRIES", "3")),
            aiproxy_username=os.getenv("AGENTCORE_AIPROXY_USERNAME", ""),
            aiproxy_password=os.getenv("AGENTCORE_AIPROXY_PASSWORD", ""),
            aiproxy_provider=os.getenv("AGENTCORE_AIPROXY_PROVIDER", "qwen"),
        )

    @property
    def reserved_response_tokens(self) -> int:
        return self.max_tokens or 8192

    def validate(self) -> bool:
        """Validate the configuration."""
        if self.provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider '{self.provider}'. Expected one of: {', '.join(PROVIDERS)}")
        if not self.api_url and self.provider != "qwen":
            raise ConfigError("API URL is required (AGENTCORE_API_URL or api_url in config.json).")
        if not self.api_key:
            raise ConfigError("API key is required (AGENTCORE_API_KEY or api_key in config.json).")
        if self.context_window <= 0:
            raise ConfigError("context_window must be positive.")
        if not 5 <= self.auto_condense_context_percent <= 100:
            raise ConfigError("auto_condense_context_percent must be between 5 and 100.")
        return True
