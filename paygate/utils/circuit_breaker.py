"""Per-collaborator circuit breaker.

The payment status checker and the job executor are both remote calls made from
poll workers. When one of them keeps failing the breaker opens for a cooldown.
An open ``payment_checker`` skips the check without counting it as a poll. An
open ``executor`` holds back optimistic attempts; confirmed-payment executions
still reach the executor. After the cooldown a limited number of probe calls
decide whether to close again.
"""
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from paygate.config import CIRCUIT_BREAKER
from paygate.utils.time import Clock, utc_now


class BreakerPhase(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    failures: int = 0
    state: BreakerPhase = BreakerPhase.CLOSED
    opened_at: Optional[datetime] = None
    half_open_probes: int = 0

    def trip(self, now: datetime) -> None:
        self.state = BreakerPhase.OPEN
        self.opened_at = now
        self.half_open_probes = 0


class CircuitBreaker:
    """Breakers keyed by collaborator name (``payment_checker``, ``executor``).

    Thresholds default to ``CIRCUIT_BREAKER`` from config. All state changes
    happen under one lock since every poll worker shares the instance.
    """

    def __init__(
        self,
        *,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        probe_limit: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown = timedelta(seconds=cooldown_seconds if cooldown_seconds is not None else CIRCUIT_BREAKER["open_cooldown_seconds"])
        self.probe_limit = int(probe_limit or CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def _get(self, name: str) -> BreakerState:
        return self._states.setdefault(name, BreakerState())

    def allow_call(self, name: str) -> tuple[bool, str | None]:
        """Return ``(allowed, reason)``; reason is set only when the call is refused."""
        with self._lock:
            st = self._get(name)
            if st.state is BreakerPhase.OPEN:
                if st.opened_at is not None and self._clock() - st.opened_at < self.cooldown:
                    return False, "circuit_open"
                st.state = BreakerPhase.HALF_OPEN
                st.half_open_probes = 0
            if st.state is BreakerPhase.HALF_OPEN:
                if st.half_open_probes >= self.probe_limit:
                    return False, "half_open_probe_exhausted"
                st.half_open_probes += 1
            return True, None

    def record_success(self, name: str) -> None:
        with self._lock:
            self._states[name] = BreakerState()

    def record_failure(self, name: str) -> None:
        with self._lock:
            st = self._get(name)
            st.failures += 1
            if st.state is BreakerPhase.HALF_OPEN or (
                st.state is BreakerPhase.CLOSED and st.failures >= self.failure_threshold
            ):
                st.trip(self._clock())

    def reset(self) -> None:
        with self._lock:
            self._states.clear()

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                name: {
                    "failures": st.failures,
                    "state": st.state.value,
                    "opened_at": st.opened_at.isoformat() if st.opened_at else None,
                    "half_open_probes": st.half_open_probes,
                }
                for name, st in self._states.items()
            }


GLOBAL_CIRCUIT_BREAKER = CircuitBreaker()

__all__ = ["CircuitBreaker", "GLOBAL_CIRCUIT_BREAKER", "BreakerState", "BreakerPhase"]
