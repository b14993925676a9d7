"""Time source and cancellation primitives.

Every blocking wait in the engine goes through ``Clock.wait`` with a
``CancelToken`` so tests can drive polling deterministically with
``FakeClock`` and cancellation unblocks a wait immediately.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from .errors import WorkflowCancelledError


class WaitOutcome(str, Enum):
    ELAPSED = "elapsed"
    CANCELLED = "cancelled"


class CancelToken:
    """Single cancellation signal threaded through every blocking call."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise WorkflowCancelledError()


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""

    def since(self, start: datetime) -> float:
        """Seconds elapsed since ``start``."""
        return (self.now() - start).total_seconds()

    @abstractmethod
    def wait(self, seconds: float, cancel: Optional[CancelToken] = None) -> WaitOutcome:
        """Block for ``seconds`` unless ``cancel`` fires first."""


class RealClock(Clock):
    """Wall-clock implementation."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def wait(self, seconds: float, cancel: Optional[CancelToken] = None) -> WaitOutcome:
        seconds = max(0.0, seconds)
        if cancel is None:
            time.sleep(seconds)
            return WaitOutcome.ELAPSED
        if cancel.wait(seconds):
            return WaitOutcome.CANCELLED
        return WaitOutcome.ELAPSED


class FakeClock(Clock):
    """Manually advanced clock for tests.

    ``wait`` advances virtual time instantly and records the requested
    duration. Hooks registered with ``on_wait`` run after each wait and may
    cancel tokens or change state to simulate events during a wait.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.waits: List[float] = []
        self._hooks: List[Callable[[int], None]] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)

    def on_wait(self, hook: Callable[[int], None]) -> None:
        """Register ``hook(wait_count)`` to run after every completed wait."""
        self._hooks.append(hook)

    def wait(self, seconds: float, cancel: Optional[CancelToken] = None) -> WaitOutcome:
        if cancel is not None and cancel.cancelled:
            return WaitOutcome.CANCELLED
        seconds = max(0.0, seconds)
        self.waits.append(seconds)
        self.advance(seconds)
        for hook in list(self._hooks):
            hook(len(self.waits))
        if cancel is not None and cancel.cancelled:
            return WaitOutcome.CANCELLED
        return WaitOutcome.ELAPSED
