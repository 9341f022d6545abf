"""Central Enum definitions for core domain states.

These replace scattered string literals to ensure consistency across the
registry, history ledger, schemas, and reconciliation logic.
"""
from __future__ import annotations
import enum


class JobStatus(str, enum.Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    OPTIMISTICALLY_PROCESSING = "OPTIMISTICALLY_PROCESSING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


ACTIVE_STATUSES = frozenset({JobStatus.AWAITING_PAYMENT, JobStatus.OPTIMISTICALLY_PROCESSING})


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    ERROR = "error"


class FeedbackKind(str, enum.Enum):
    PAYMENT_REQUIRED = "payment-required"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


__all__ = [
    "JobStatus",
    "ACTIVE_STATUSES",
    "PaymentStatus",
    "FeedbackKind",
    "AlertSeverity",
]
