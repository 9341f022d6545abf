"""In-process event log acting as both feedback and result publisher.

Stands in for the relay transport: every event is logged and kept per job so
requesters (and the HTTP API) can read back what was emitted, in order.
"""
from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Optional

from paygate.config import EVENT_LOG_SETTINGS
from paygate.models.db.enums import FeedbackKind
from paygate.utils import get_logger
from paygate.utils.time import Clock, utc_now

logger = get_logger(__name__)

RESULT_KIND = "result"


@dataclass(frozen=True)
class PublishedEvent:
    job_id: str
    kind: str
    detail: Optional[str]
    emitted_at: datetime
    amount_units: Optional[int] = None
    payment_reference: Optional[str] = None


class EventLogPublisher:
    def __init__(self, *, max_events_per_job: int | None = None, max_jobs: int | None = None, clock: Clock = utc_now) -> None:
        self._max_events = int(max_events_per_job or EVENT_LOG_SETTINGS["max_events_per_job"])
        self._max_jobs = int(max_jobs or EVENT_LOG_SETTINGS["max_jobs_tracked"])
        self._events: "OrderedDict[str, Deque[PublishedEvent]]" = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock

    def _append(self, event: PublishedEvent) -> None:
        with self._lock:
            bucket = self._events.get(event.job_id)
            if bucket is None:
                bucket = deque(maxlen=self._max_events)
                self._events[event.job_id] = bucket
                # Oldest jobs fall off first
                while len(self._events) > self._max_jobs:
                    self._events.popitem(last=False)
            bucket.append(event)

    def publish(self, job_id: str, kind: FeedbackKind, detail: Optional[str] = None) -> None:
        kind_value = kind.value if isinstance(kind, FeedbackKind) else str(kind)
        self._append(PublishedEvent(job_id=job_id, kind=kind_value, detail=detail, emitted_at=self._clock()))
        logger.info("Feedback published", job_id=job_id, kind=kind_value, detail=detail[:256] if detail else None)

    def publish_result(self, job_id: str, result_content: str, amount_units: int, payment_reference: Optional[str]) -> None:
        self._append(
            PublishedEvent(
                job_id=job_id,
                kind=RESULT_KIND,
                detail=result_content,
                emitted_at=self._clock(),
                amount_units=amount_units,
                payment_reference=payment_reference,
            )
        )
        logger.info("Result published", job_id=job_id, amount_units=amount_units, result_chars=len(result_content))

    def events_for(self, job_id: str) -> list[PublishedEvent]:
        with self._lock:
            return list(self._events.get(job_id, ()))

    def kinds_for(self, job_id: str) -> list[str]:
        return [e.kind for e in self.events_for(job_id)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


__all__ = ["EventLogPublisher", "PublishedEvent", "RESULT_KIND"]
