"""Cancellation handling for a running task.

One token is owned by each task. The network read loop and the command
runner poll it (or await ``wait()``) so that a cancel closes the stream
immediately and sends a terminate signal to a running process.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from .logger import get_logger

log = get_logger("interrupt")


@dataclass
class CancellationToken:
    """Shared cancel flag for one task."""
    cancelled: bool = False
    reason: str = ""
    _event: Optional[asyncio.Event] = field(default=None, repr=False)

    def cancel(self, reason: str = "user") -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self.reason = reason
        log.info("cancellation requested: reason=%s", reason)
        if self._event is not None:
            self._event.set()

    def reset(self) -> None:
        self.cancelled = False
        self.reason = ""
        if self._event is not None:
            self._event.clear()

    async def wait(self) -> None:
        """Block until cancelled. Must be called from inside an event loop."""
        if self._event is None:
            self._event = asyncio.Event()
            if self.cancelled:
                self._event.set()
        await self._event.wait()
