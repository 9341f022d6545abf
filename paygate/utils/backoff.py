"""Exponential backoff helpers for payment status polling."""
from __future__ import annotations

from typing import Optional

from paygate.config import POLL_POLICY


def backoff_delay(attempts: int, *, initial: Optional[float] = None, factor: Optional[float] = None, max_delay: Optional[float] = None) -> float:
    """Delay before the next status check after ``attempts`` checks so far.

    ``min(initial * factor**attempts, max_delay)``; zero attempts yields the
    initial delay so the first check is not issued right after invoicing.
    """
    if attempts < 0:
        attempts = 0
    initial = float(initial if initial is not None else POLL_POLICY["initial_delay_seconds"])
    factor = float(factor if factor is not None else POLL_POLICY["factor"])
    max_delay = float(max_delay if max_delay is not None else POLL_POLICY["max_delay_seconds"])

    # Past the cap the power only grows; stop before it overflows.
    delay = initial
    for _ in range(attempts):
        if delay >= max_delay:
            break
        delay *= factor
    return min(delay, max_delay)


__all__ = ["backoff_delay"]
