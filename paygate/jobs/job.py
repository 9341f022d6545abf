"""Job value object tracked by the registry."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from paygate.models.db.enums import ACTIVE_STATUSES, JobStatus


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class Job:
    """Immutable snapshot of one unit of paid work.

    Registry updates swap whole snapshots, so a reader never observes a job
    halfway through a transition. ``last_polled_at`` starts at ``created_at``
    so the first status check waits one full initial backoff.
    """

    id: str
    request_payload: Mapping[str, Any]
    amount_units: int
    created_at: datetime
    last_polled_at: datetime
    payment_reference: Optional[str] = None
    renderable_invoice: Optional[str] = None
    poll_attempts: int = 0
    optimistically_executed: bool = False
    status: JobStatus = JobStatus.AWAITING_PAYMENT
    # Cooldown gate after a failed optimistic attempt
    optimistic_retry_at: Optional[datetime] = None
    processing_notified: bool = False
    # Set once payment is confirmed and execution owns the job
    execution_claimed: bool = False
    amount_paid: Optional[int] = None

    @classmethod
    def create(cls, request_payload: Mapping[str, Any], amount_units: int, now: datetime, *, job_id: str | None = None) -> "Job":
        return cls(
            id=job_id or new_job_id(),
            request_payload=dict(request_payload),
            amount_units=amount_units,
            created_at=now,
            last_polled_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def evolve(self, **changes: Any) -> "Job":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_payload": dict(self.request_payload),
            "amount_units": self.amount_units,
            "created_at": self.created_at.isoformat(),
            "last_polled_at": self.last_polled_at.isoformat(),
            "payment_reference": self.payment_reference,
            "renderable_invoice": self.renderable_invoice,
            "poll_attempts": self.poll_attempts,
            "optimistically_executed": self.optimistically_executed,
            "status": self.status.value,
            "optimistic_retry_at": self.optimistic_retry_at.isoformat() if self.optimistic_retry_at else None,
            "processing_notified": self.processing_notified,
            "execution_claimed": self.execution_claimed,
            "amount_paid": self.amount_paid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        retry_raw = data.get("optimistic_retry_at")
        return cls(
            id=str(data["id"]),
            request_payload=dict(data.get("request_payload") or {}),
            amount_units=int(data["amount_units"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_polled_at=datetime.fromisoformat(data["last_polled_at"]),
            payment_reference=data.get("payment_reference"),
            renderable_invoice=data.get("renderable_invoice"),
            poll_attempts=int(data.get("poll_attempts", 0)),
            optimistically_executed=bool(data.get("optimistically_executed", False)),
            status=JobStatus(data.get("status", JobStatus.AWAITING_PAYMENT.value)),
            optimistic_retry_at=datetime.fromisoformat(retry_raw) if retry_raw else None,
            processing_notified=bool(data.get("processing_notified", False)),
            execution_claimed=bool(data.get("execution_claimed", False)),
            amount_paid=data.get("amount_paid"),
        )


__all__ = ["Job", "new_job_id"]
