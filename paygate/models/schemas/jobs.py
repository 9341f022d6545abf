"""
Pydantic schemas for job intake, live job views, and the history ledger.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator


class JobSubmission(BaseModel):
    """
    Request body for submitting a paid compute job.
    """
    prompt: str = Field(min_length=1, max_length=32_000, description="Text input for the generation job")
    model: Optional[str] = Field(None, description="Model to run; defaults to the configured model")
    params: Dict[str, Any] = Field(default_factory=dict, description="Generation parameters passed to the executor")
    amount_units: Optional[int] = Field(None, ge=0, description="Explicit price; quoted from the prompt size when omitted")

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


class JobView(BaseModel):
    """Live state of an active job, or the ledger state of a finished one."""
    job_id: str
    status: str = Field(description="AWAITING_PAYMENT, OPTIMISTICALLY_PROCESSING, COMPLETED, EXPIRED or FAILED")
    active: bool
    amount_units: int
    payment_reference: Optional[str] = None
    invoice: Optional[str] = Field(None, description="Renderable invoice the requester pays")
    poll_attempts: int = 0
    optimistically_executed: bool = False
    created_at: datetime
    last_polled_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_detail: Optional[str] = None


class JobEvent(BaseModel):
    """A feedback or result event emitted for a job."""
    kind: str = Field(description="payment-required, processing, success, error or result")
    detail: Optional[str] = None
    emitted_at: datetime


class JobHistoryItem(BaseModel):
    job_id: str
    status: str
    amount_units: int
    amount_paid: Optional[int] = None
    model: Optional[str] = None
    input_summary: Optional[str] = None
    result_summary: Optional[str] = None
    error_detail: Optional[str] = None
    poll_attempts: int
    optimistically_executed: bool
    uncompensated: bool
    created_at: datetime
    finished_at: datetime
    processing_ms: Optional[float] = None

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class JobStatistics(BaseModel):
    """Aggregates over the history ledger plus the live registry."""
    total_jobs_processed: int
    total_successful_jobs: int
    total_failed_jobs: int
    total_expired_jobs: int
    total_revenue_units: int = Field(description="Sum of amounts received over completed jobs")
    jobs_pending_payment: int
    uncompensated_jobs: int
    average_processing_time_ms: Optional[float] = None
    model_usage_counts: Dict[str, int] = Field(default_factory=dict)


class JobHistoryPage(BaseModel):
    items: List[JobHistoryItem]
    total: int
    limit: int
    offset: int
