"""Background poll scheduler driving the reconciliation engine."""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from paygate.jobs.registry import JobRegistry, RegistryClosedError
from paygate.models.db.enums import ACTIVE_STATUSES
from paygate.services.reconciliation_engine import ReconciliationEngine
from paygate.utils import get_logger

logger = get_logger(__name__)

# Debug instrumentation store (test visibility)
LAST_EXCEPTIONS: list[dict] = []


class PollScheduler:
    """Ticks every ``global_tick_interval`` seconds.

    Each tick first expires timed-out jobs, then hands every job whose backoff
    delay has elapsed to a worker. A job id is never dispatched while a
    previous dispatch for it is still running, so per-job work is serialized
    while different jobs proceed concurrently.

    ``inline=True`` runs dispatched work on the ticking thread (tests).
    """

    def __init__(self, engine: ReconciliationEngine, registry: Optional[JobRegistry] = None, *, inline: bool = False):
        self.engine = engine
        self.registry = registry or engine.registry
        self.settings = engine.settings
        self.inline = inline
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        self._ticks = 0

    # ----------------------------- lifecycle ----------------------------- #
    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        if not self.inline:
            self._pool = ThreadPoolExecutor(
                max_workers=max(1, self.settings.max_concurrent_jobs),
                thread_name_prefix="paygate-job",
            )
        self._thread = threading.Thread(target=self._loop, name="poll-scheduler", daemon=True)
        self._thread.start()
        logger.info("Poll scheduler started", tick_interval=self.settings.global_tick_interval)

    def stop(self, *, close_registry: bool = True, wait: bool = True) -> None:
        """Stop ticking. Closing the registry makes in-flight work drop its writes."""
        self._stop_event.set()
        if close_registry:
            self.registry.close()
        if self._thread is not None and wait:
            self._thread.join(timeout=max(5.0, self.settings.global_tick_interval * 2))
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info("Poll scheduler stop requested", in_flight=len(self._in_flight))

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop_event.is_set())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:  # pragma: no cover
                logger.error("Scheduler loop error", error=str(e), exc_info=True)
            self._stop_event.wait(self.settings.global_tick_interval)

    # ----------------------------- one tick ----------------------------- #
    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Run one sweep and dispatch. Returns the job ids dispatched for polling."""
        if self._stop_event.is_set():
            return []
        self._ticks += 1
        now = now or self.engine.clock()
        dispatched: list[str] = []
        for job in self.registry.list_all():
            if job.status not in ACTIVE_STATUSES:
                continue
            if self.engine.is_timed_out(job, now):
                self._dispatch(job.id, self.engine.expire_if_timed_out, "timeout_sweep")
                continue
            if self.engine.is_poll_due(job, now) and self._dispatch(job.id, self.engine.poll, "poll"):
                dispatched.append(job.id)
        return dispatched

    def _dispatch(self, job_id: str, fn, operation: str) -> bool:
        with self._lock:
            if job_id in self._in_flight:
                return False
            self._in_flight.add(job_id)
        if self.inline or self._pool is None:
            self._run_job(job_id, fn, operation)
            return True
        try:
            self._pool.submit(self._run_job, job_id, fn, operation)
        except RuntimeError:
            # Pool already shut down
            self._release(job_id)
            return False
        return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._in_flight.discard(job_id)

    def _run_job(self, job_id: str, fn, operation: str) -> None:
        start = time.time()
        try:
            fn(job_id)
        except RegistryClosedError:
            logger.info("Job work dropped after shutdown", job_id=job_id, operation=operation)
        except Exception as e:
            logger.error("Scheduled job work failed", job_id=job_id, operation=operation, error=str(e), exc_info=True)
            LAST_EXCEPTIONS.append({"job_id": job_id, "operation": operation, "error": str(e), "type": type(e).__name__})
        finally:
            self._release(job_id)
            logger.debug("Scheduled job work finished", job_id=job_id, operation=operation, duration_ms=round((time.time() - start) * 1000, 2))

    def snapshot(self) -> dict:
        with self._lock:
            in_flight = len(self._in_flight)
        return {
            "running": self.is_running,
            "ticks": self._ticks,
            "in_flight": in_flight,
            "tick_interval_seconds": self.settings.global_tick_interval,
            "max_concurrent_jobs": self.settings.max_concurrent_jobs,
        }


__all__ = ["PollScheduler", "LAST_EXCEPTIONS"]
