"""Stops a task that keeps issuing the exact same tool call."""

import json
from dataclasses import dataclass
from typing import Dict, Optional

from .logger import get_logger

log = get_logger("repetition")

DEFAULT_REPETITION_LIMIT = 3


@dataclass
class ToolInvocation:
    """A closed tool-use block in the form the guard compares."""
    name: str
    params: Dict[str, str]
    id: str = ""

    def canonical(self) -> str:
        return json.dumps(
            {"name": self.name, "parameters": {k: self.params[k] for k in sorted(self.params)}},
            ensure_ascii=False,
        )


@dataclass
class GuardDecision:
    allow: bool
    reason: Optional[str] = None


class RepetitionGuard:
    """Counts consecutive identical invocations; denies at the limit.

    A limit of 0 disables the guard. After a denial the counters are
    cleared so the model can recover once it changes course.
    """

    def __init__(self, limit: int = DEFAULT_REPETITION_LIMIT):
        self.limit = limit
        self.previous: Optional[str] = None
        self.count = 0

    def check(self, invocation: ToolInvocation) -> GuardDecision:
        current = invocation.canonical()
        if current == self.previous:
            self.count += 1
        else:
            self.count = 0
            self.previous = current

        if self.limit > 0 and self.count >= self.limit:
            log.warning("repetition limit hit: tool=%s count=%d limit=%d", invocation.name, self.count, self.limit)
            self.count = 0
            self.previous = None
            return GuardDecision(
                allow=False,
                reason=(
                    f"Tool '{invocation.name}' was called {self.limit + 1} times in a row with identical "
                    f"parameters (limit {self.limit} repeats). Try a different approach."
                ),
            )
        return GuardDecision(allow=True)
