"""
Cooperative frame scheduler.

Stands in for animation-frame callbacks: work requested between two ticks
runs once, on the next tick, in request order.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class FrameScheduler:
    """Coalesces frame requests; `tick()` runs each pending callback once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: List[Callable[[], None]] = []
        self.frames = 0

    def request(self, callback: Callable[[], None]) -> bool:
        """Queue a callback for the next tick. Returns False if it is already queued."""
        with self._lock:
            if callback in self._pending:
                return False
            self._pending.append(callback)
            return True

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def tick(self) -> int:
        """Run the callbacks requested since the last tick."""
        with self._lock:
            callbacks, self._pending = self._pending, []
            self.frames += 1
        for callback in callbacks:
            callback()
        return len(callbacks)
