"""
Job intake and status endpoints.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
import time
from paygate.api.deps import get_db, get_engine, get_event_log
from paygate.config import PRICING
from paygate.integrations.event_log import EventLogPublisher
from paygate.jobs.job import Job
from paygate.jobs.registry import RegistryClosedError
from paygate.models.db.enums import JobStatus
from paygate.models.db.job_history import JobHistoryEntry
from paygate.models.schemas.base import ResponseBase
from paygate.models.schemas.jobs import JobEvent, JobSubmission, JobView
from paygate.services.job_history import get_history_entry
from paygate.services.pricing import quote_price
from paygate.services.reconciliation_engine import JobRejectedError, ReconciliationEngine
from paygate.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


def _view_from_job(job: Job) -> JobView:
    return JobView(
        job_id=job.id,
        status=job.status.value,
        active=job.is_active,
        amount_units=job.amount_units,
        payment_reference=job.payment_reference,
        invoice=job.renderable_invoice,
        poll_attempts=job.poll_attempts,
        optimistically_executed=job.optimistically_executed,
        created_at=job.created_at,
        last_polled_at=job.last_polled_at,
    )


def _view_from_history(entry: JobHistoryEntry) -> JobView:
    return JobView(
        job_id=entry.job_id,
        status=entry.status.value if isinstance(entry.status, JobStatus) else str(entry.status),
        active=False,
        amount_units=entry.amount_units,
        payment_reference=entry.payment_reference,
        poll_attempts=entry.poll_attempts,
        optimistically_executed=entry.optimistically_executed,
        created_at=entry.created_at,
        finished_at=entry.finished_at,
        error_detail=entry.error_detail,
    )


def _lookup(job_id: str, engine: ReconciliationEngine, db: Session) -> Optional[JobView]:
    job = engine.get_job(job_id)
    if job is not None:
        return _view_from_job(job)
    entry = get_history_entry(db, job_id)
    return _view_from_history(entry) if entry is not None else None


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a paid compute job"
)
def submit_job(
    submission: JobSubmission,
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Accept a job, issue its invoice and return the payment request.

    When ``amount_units`` is omitted the price is quoted from the prompt size
    and ``params.max_tokens``.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", "unknown")
    model = submission.model or str(PRICING["default_model"])
    amount = submission.amount_units
    if amount is None:
        amount = quote_price(submission.prompt, max_tokens=submission.params.get("max_tokens"))

    payload = {"prompt": submission.prompt, "model": model, "params": dict(submission.params)}
    try:
        job_id = engine.submit(payload, amount)
    except JobRejectedError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except RegistryClosedError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Provider is shutting down")

    view = _lookup(job_id, engine, db)
    log_business_event(
        event_type="job_submitted",
        details={"amount_units": amount, "model": model, "status": view.status if view else None},
        job_id=job_id,
        request_id=request_id
    )
    log_performance(
        operation="submit_job",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"job_id": job_id}
    )
    if view is not None and view.status == JobStatus.FAILED.value:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Job {job_id} failed: {view.error_detail or 'invoice could not be issued'}"
        )
    return ResponseBase(
        success=True,
        message="Payment required" if view and view.active else "Job accepted",
        data=view.model_dump(mode="json") if view else {"job_id": job_id},
    )


@router.get(
    "/",
    response_model=list[JobView],
    summary="List active jobs"
)
def list_active_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    engine: ReconciliationEngine = Depends(get_engine)
) -> list[JobView]:
    jobs = engine.active_jobs()
    if status_filter is not None:
        jobs = [j for j in jobs if j.status == status_filter]
    jobs.sort(key=lambda j: j.created_at)
    return [_view_from_job(j) for j in jobs]


@router.get(
    "/{job_id}",
    response_model=JobView,
    summary="Get job state"
)
def get_job(
    job_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
    db: Session = Depends(get_db)
) -> JobView:
    view = _lookup(job_id, engine, db)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return view


@router.get(
    "/{job_id}/events",
    response_model=list[JobEvent],
    summary="Feedback and result events published for a job"
)
def get_job_events(
    job_id: str,
    event_log: EventLogPublisher = Depends(get_event_log)
) -> list[JobEvent]:
    events = event_log.events_for(job_id)
    if not events:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No events for job {job_id}")
    return [JobEvent(kind=e.kind, detail=e.detail, emitted_at=e.emitted_at) for e in events]
