"""Time utilities (UTC now, injectable clocks)."""
from __future__ import annotations
import threading
from datetime import datetime, timezone, timedelta
from typing import Callable

Clock = Callable[[], datetime]

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ManualClock:
    """Deterministic clock for tests and simulations; advanced explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

__all__ = ["Clock", "utc_now", "ManualClock"]
