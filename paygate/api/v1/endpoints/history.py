"""
Finished job ledger endpoints.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from paygate.api.deps import get_db, get_engine
from paygate.models.db.enums import JobStatus
from paygate.models.schemas.jobs import JobHistoryItem, JobHistoryPage, JobStatistics
from paygate.services.job_history import compute_statistics, get_history_entry, list_history
from paygate.services.reconciliation_engine import ReconciliationEngine
from paygate.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/", response_model=JobHistoryPage, summary="List finished jobs")
def get_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db)
) -> JobHistoryPage:
    rows, total = list_history(db, limit=limit, offset=offset, status=status_filter)
    return JobHistoryPage(
        items=[JobHistoryItem.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=JobStatistics, summary="Ledger statistics")
def get_history_stats(
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine)
) -> JobStatistics:
    """Totals over finished jobs plus the live count still awaiting payment."""
    stats = compute_statistics(db, jobs_pending_payment=engine.pending_payment_count())
    logger.debug("History statistics computed", total_jobs=stats.total_jobs_processed)
    return stats


@router.get("/{job_id}", response_model=JobHistoryItem, summary="Get one finished job")
def get_history_item(job_id: str, db: Session = Depends(get_db)) -> JobHistoryItem:
    entry = get_history_entry(db, job_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No history for job {job_id}")
    return JobHistoryItem.model_validate(entry)
