"""In-memory job registry (single-process).

Features:
- One entry per job id; ids are never reused once retired.
- Atomic read-modify-write per job via ``update(job_id, mutation)``.
- Stable snapshots for the scheduler's iteration.
- Thread-safe with a re-entrant lock; jobs are immutable so the lock only
  guards the dict, never the work done on a job.

Mutation contract: ``mutation(current) -> Job | None``. Returning ``None``
leaves the entry untouched (a compare-and-swap miss) and ``update`` returns
``None``. Returning a job whose id differs is rejected.

After ``close()`` every write raises ``RegistryClosedError`` so that no
transition is applied once shutdown has begun; reads keep working.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol

from paygate.jobs.job import Job
from paygate.models.db.enums import JobStatus
from paygate.utils import get_logger

logger = get_logger(__name__)

Mutation = Callable[[Job], Optional[Job]]


class RegistryClosedError(RuntimeError):
    """Write attempted after the registry was closed."""


class DuplicateJobError(ValueError):
    """Job id already present or previously retired."""


class JobRegistry(Protocol):
    def put(self, job: Job) -> None: ...
    def get(self, job_id: str) -> Optional[Job]: ...
    def update(self, job_id: str, mutation: Mutation) -> Optional[Job]: ...
    def delete(self, job_id: str) -> Optional[Job]: ...
    def list_all(self) -> list[Job]: ...
    def close(self) -> None: ...
    def snapshot(self) -> dict: ...


class InMemoryJobRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._retired: set[str] = set()
        self._closed = False

    # ----------------------------- internal helpers ----------------------------- #
    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("Registry closed")

    # ----------------------------- public API ----------------------------- #
    def put(self, job: Job) -> None:
        with self._lock:
            self._ensure_open()
            if job.id in self._jobs or job.id in self._retired:
                raise DuplicateJobError(f"Job id '{job.id}' already used")
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, mutation: Mutation) -> Optional[Job]:
        with self._lock:
            self._ensure_open()
            current = self._jobs.get(job_id)
            if current is None:
                return None
            updated = mutation(current)
            if updated is None:
                return None
            if updated.id != current.id:
                raise ValueError("Mutation must not change the job id")
            self._jobs[job_id] = updated
            return updated

    def delete(self, job_id: str) -> Optional[Job]:
        with self._lock:
            self._ensure_open()
            removed = self._jobs.pop(job_id, None)
            if removed is not None:
                self._retired.add(job_id)
            return removed

    def list_all(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def close(self) -> None:
        with self._lock:
            self._closed = True
        logger.info("Job registry closed", active_jobs=len(self._jobs))

    @property
    def closed(self) -> bool:
        return self._closed

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Drop all entries and reopen. Intended for test isolation only."""
        with self._lock:
            self._jobs.clear()
            self._retired.clear()
            self._closed = False

    # ----------------------------- inspection ----------------------------- #
    def __len__(self) -> int:
        return len(self._jobs)

    def snapshot(self) -> dict:
        with self._lock:
            statuses = [j.status for j in self._jobs.values()]
            return {
                "backend": "memory",
                "active": len(statuses),
                "awaiting_payment": statuses.count(JobStatus.AWAITING_PAYMENT),
                "optimistically_processing": statuses.count(JobStatus.OPTIMISTICALLY_PROCESSING),
                "retired": len(self._retired),
                "closed": self._closed,
            }


__all__ = [
    "JobRegistry",
    "InMemoryJobRegistry",
    "RegistryClosedError",
    "DuplicateJobError",
    "Mutation",
]
