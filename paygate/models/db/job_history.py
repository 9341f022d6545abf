from __future__ import annotations
"""SQLAlchemy model for the terminal job ledger."""
from datetime import datetime

from sqlalchemy import Integer, String, Text, DateTime, Enum, Boolean, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from paygate.database import Base
from .enums import JobStatus


class JobHistoryEntry(Base):
    """One row per job that reached a terminal status.

    Active jobs live only in the registry; a row is written exactly once when
    the job leaves it.
    """
    __tablename__ = "job_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), nullable=False, index=True)

    payment_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid: Mapped[int | None] = mapped_column(Integer, nullable=True)

    model: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    input_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    poll_attempts: Mapped[int] = mapped_column(Integer, default=0)
    optimistically_executed: Mapped[bool] = mapped_column(Boolean, default=False)
    # Work delivered optimistically for a payment that never settled
    uncompensated: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    request_params: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processing_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
