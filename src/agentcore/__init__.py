"""Embedded coding-agent engine: streaming, tool dispatch and context budgeting."""

from .assistant_message import AssistantMessageParser, TextContent, ToolUse
from .checkpoints import Checkpoint, CheckpointCoordinator
from .config import EngineConfig
from .context_window import ContextDecision, ContextWindowManager, truncate_conversation
from .cost_tracker import CostTracker
from .errors import AgentCoreError, ConfigError, ProviderError, TaskAbortedError
from .host import AskResponse, TaskHost
from .providers import ProviderAdapter, ProviderClient, create_adapter
from .repetition_guard import RepetitionGuard, ToolInvocation
from .stream_normalizer import StreamNormalizer
from .task import TaskController, TaskState
from .tool_dispatcher import ToolDispatcher, ToolResult
from .tools import WorkspaceTools

__version__ = "0.1.0"
__all__ = [
    "AssistantMessageParser",
    "TextContent",
    "ToolUse",
    "Checkpoint",
    "CheckpointCoordinator",
    "EngineConfig",
    "ContextDecision",
    "ContextWindowManager",
    "truncate_conversation",
    "CostTracker",
    "AgentCoreError",
    "ConfigError",
    "ProviderError",
    "TaskAbortedError",
    "AskResponse",
    "TaskHost",
    "ProviderAdapter",
    "ProviderClient",
    "create_adapter",
    "RepetitionGuard",
    "ToolInvocation",
    "StreamNormalizer",
    "TaskController",
    "TaskState",
    "ToolDispatcher",
    "ToolResult",
    "WorkspaceTools",
]
