"""Optimistic processing policy.

Decides whether an unconfirmed payment is trusted enough to start work before
the payee's own ledger reports it settled. Kept free of registry and
collaborator access so the trust rule can be tuned or swapped on its own.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from paygate.config import OPTIMISTIC_POLICY
from paygate.jobs.job import Job
from paygate.models.db.enums import JobStatus


def should_process_optimistically(job: Job, threshold: Optional[int] = None, *, now: Optional[datetime] = None) -> bool:
    """Return True when the job may be executed without confirmed payment.

    Args:
        job: current registry snapshot
        threshold: status checks required first (defaults to config)
        now: when given, a pending retry cooldown after a failed optimistic
            attempt also has to have elapsed
    """
    if threshold is None:
        threshold = int(OPTIMISTIC_POLICY["threshold"])  # type: ignore[arg-type]
    if job.status != JobStatus.AWAITING_PAYMENT or job.optimistically_executed or job.execution_claimed:
        return False
    if job.poll_attempts < threshold:
        return False
    if now is not None and job.optimistic_retry_at is not None and now < job.optimistic_retry_at:
        return False
    return True


__all__ = ["should_process_optimistically"]
