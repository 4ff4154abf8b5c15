"""
Sync progress reporting.

Passes can touch thousands of files; observers (the CLI progress bar, log
lines) only want an update every few percent. ProgressReporter coalesces
per-unit ticks into steps and always emits the final update.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncProgress:
    """Snapshot passed to observers."""

    provider: str
    processed: int
    total: int
    done: bool = False

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(100.0 * self.processed / self.total, 1)


ProgressObserver = Callable[[SyncProgress], None]


class ProgressReporter:
    """Fan-out of coalesced progress updates to observer callbacks."""

    def __init__(self, step_items: int = 10, step_percent: float = 5.0):
        self.step_items = max(1, step_items)
        self.step_percent = step_percent
        self._observers: list[ProgressObserver] = []
        self._lock = threading.Lock()

    def subscribe(self, observer: ProgressObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def step_size(self, total: int) -> int:
        """Units between updates for a pass of `total` units."""
        return max(self.step_items, math.ceil(total * self.step_percent / 100))

    def tracker(self, provider: str, total: int) -> "ProgressTracker":
        return ProgressTracker(self, provider, total, self.step_size(total))

    def _notify(self, progress: SyncProgress) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(progress)
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}")


class ProgressTracker:
    """Per-pass counter. advance() once per unit, finish() once at the end."""

    def __init__(self, reporter: ProgressReporter, provider: str, total: int, step: int):
        self.reporter = reporter
        self.provider = provider
        self.total = total
        self.step = step
        self.processed = 0
        self._last_emitted = 0
        self._finished = False

    def advance(self, count: int = 1) -> None:
        self.processed += count
        if self.processed - self._last_emitted >= self.step and self.processed < self.total:
            self._last_emitted = self.processed
            self.reporter._notify(
                SyncProgress(self.provider, self.processed, self.total)
            )

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.reporter._notify(
            SyncProgress(self.provider, self.processed, self.total, done=True)
        )
