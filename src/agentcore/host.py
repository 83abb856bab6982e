"""What the engine needs from the editor (or terminal) embedding it."""

from dataclasses import dataclass, field
from typing import List, Optional

ASK_KINDS = ("tool", "command", "followup", "mistake_limit_reached", "api_req_failed", "checkpoint_restore")
SAY_KINDS = (
    "text", "tool", "error", "user_feedback", "completion_result",
    "checkpoint_saved", "condense", "api_req_started",
)


@dataclass
class AskResponse:
    response: str  # yes | no | message
    text: str = ""
    images: List[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.response == "yes"


class TaskHost:
    """Base host. Subclasses answer asks and render says.

    The default answers everything with "no" and discards output, which
    is what a headless embedding without a user wants.
    """

    async def ask(self, kind: str, text: str = "") -> AskResponse:
        return AskResponse(response="no")

    async def say(self, kind: str, text: str = "", partial: bool = False) -> None:
        return None

    async def new_task(self, mode: str, message: str) -> Optional[str]:
        """Start a subtask. ``None`` means this host cannot."""
        return None
