"""
Progress checkpoints of a backtest request.

Subscribers are plain callables ``callback(request_id, checkpoint)``; they are
called in subscription order, synchronously, once per checkpoint reached.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)


class Checkpoint(str, Enum):
    VALIDATED = "validated"
    COMPILED = "compiled"
    DISPATCHED = "dispatched"
    INTERPRETED = "interpreted"

    @property
    def percentage(self) -> int:
        return {"validated": 20, "compiled": 40, "dispatched": 70, "interpreted": 100}[self.value]


Callback = Callable[[str, Checkpoint], None]


class ProgressReporter:
    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id
        self._subscribers: List[Callback] = []
        self.reached: List[Checkpoint] = []

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def report(self, checkpoint: Checkpoint, request_id: str | None = None) -> None:
        rid = request_id if request_id is not None else self.request_id
        self.reached.append(checkpoint)
        logger.info("[%s] %s (%d%%)", rid, checkpoint.value, checkpoint.percentage)
        for callback in list(self._subscribers):
            callback(rid, checkpoint)
