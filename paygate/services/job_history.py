"""Terminal job ledger: persistence, listing and statistics.

A row is written once, when a job leaves the registry. Statistics combine the
ledger with the live registry count of jobs still waiting for payment.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate.config import JOB_SETTINGS
from paygate.database import SessionLocal
from paygate.jobs.job import Job
from paygate.models.db.enums import JobStatus
from paygate.models.db.job_history import JobHistoryEntry
from paygate.models.schemas.jobs import JobStatistics
from paygate.utils import get_logger

logger = get_logger(__name__)


def _summarize(text: Optional[str], length: Optional[int] = None) -> Optional[str]:
    if text is None:
        return None
    limit = int(length or JOB_SETTINGS["summary_length"])  # type: ignore[arg-type]
    text = " ".join(str(text).split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


class JobHistoryRecorder:
    """Writes terminal job rows through a session factory."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal

    def record(
        self,
        job: Job,
        status: JobStatus,
        finished_at: datetime,
        *,
        result_content: Optional[str] = None,
        error_detail: Optional[str] = None,
        uncompensated: bool = False,
    ) -> Optional[JobHistoryEntry]:
        payload = job.request_payload
        params = payload.get("params") if isinstance(payload.get("params"), dict) else None
        entry = JobHistoryEntry(
            job_id=job.id,
            status=status,
            payment_reference=job.payment_reference,
            amount_units=job.amount_units,
            amount_paid=job.amount_paid,
            model=payload.get("model"),
            input_summary=_summarize(payload.get("prompt")),
            result_summary=_summarize(result_content),
            error_detail=error_detail,
            poll_attempts=job.poll_attempts,
            optimistically_executed=job.optimistically_executed,
            uncompensated=uncompensated,
            request_params=params,
            created_at=job.created_at,
            finished_at=finished_at,
            processing_ms=max(0.0, (finished_at - job.created_at).total_seconds() * 1000),
        )
        session = self._session_factory()
        try:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry
        except IntegrityError:
            session.rollback()
            logger.warning("Job history row already exists", job_id=job.id)
            return None
        finally:
            session.close()


def get_history_entry(session: Session, job_id: str) -> Optional[JobHistoryEntry]:
    return session.query(JobHistoryEntry).filter(JobHistoryEntry.job_id == job_id).one_or_none()


def list_history(session: Session, *, limit: int = 50, offset: int = 0, status: Optional[JobStatus] = None) -> tuple[list[JobHistoryEntry], int]:
    query = session.query(JobHistoryEntry)
    if status is not None:
        query = query.filter(JobHistoryEntry.status == status)
    total = query.count()
    rows = query.order_by(JobHistoryEntry.finished_at.desc(), JobHistoryEntry.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def compute_statistics(session: Session, *, jobs_pending_payment: int = 0) -> JobStatistics:
    counts: dict[Any, int] = dict(
        session.query(JobHistoryEntry.status, func.count(JobHistoryEntry.id)).group_by(JobHistoryEntry.status).all()
    )
    completed_rows = (
        session.query(JobHistoryEntry.amount_paid, JobHistoryEntry.amount_units)
        .filter(JobHistoryEntry.status == JobStatus.COMPLETED)
        .all()
    )
    revenue = sum((paid if paid is not None else units) for paid, units in completed_rows)
    avg_ms = session.query(func.avg(JobHistoryEntry.processing_ms)).filter(JobHistoryEntry.status == JobStatus.COMPLETED).scalar()
    uncompensated = session.query(func.count(JobHistoryEntry.id)).filter(JobHistoryEntry.uncompensated.is_(True)).scalar() or 0
    models = Counter(m for (m,) in session.query(JobHistoryEntry.model).filter(JobHistoryEntry.model.isnot(None)).all())

    completed = counts.get(JobStatus.COMPLETED, 0)
    failed = counts.get(JobStatus.FAILED, 0)
    expired = counts.get(JobStatus.EXPIRED, 0)
    return JobStatistics(
        total_jobs_processed=completed + failed + expired,
        total_successful_jobs=completed,
        total_failed_jobs=failed,
        total_expired_jobs=expired,
        total_revenue_units=int(revenue),
        jobs_pending_payment=jobs_pending_payment,
        uncompensated_jobs=int(uncompensated),
        average_processing_time_ms=float(avg_ms) if avg_ms is not None else None,
        model_usage_counts=dict(models),
    )


__all__ = ["JobHistoryRecorder", "get_history_entry", "list_history", "compute_statistics"]
