"""Exception types raised inside the engine."""


class AgentCoreError(Exception):
    """Base class for engine errors."""


class ConfigError(AgentCoreError, ValueError):
    """Configuration is missing or inconsistent."""


class ProviderError(AgentCoreError):
    """The backend stream reported an error."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class TaskAbortedError(AgentCoreError):
    """The task was cancelled while running."""

    def __init__(self, task_id: str, reason: str = "user"):
        super().__init__(f"task {task_id} aborted ({reason})")
        self.task_id = task_id
        self.reason = reason


class CheckpointError(AgentCoreError):
    """A version-control command failed. Never escapes CheckpointCoordinator."""
