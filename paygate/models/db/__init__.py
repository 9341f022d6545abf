from .enums import JobStatus, PaymentStatus, FeedbackKind, AlertSeverity, ACTIVE_STATUSES
from .job_history import JobHistoryEntry

__all__ = [
    "JobStatus",
    "PaymentStatus",
    "FeedbackKind",
    "AlertSeverity",
    "ACTIVE_STATUSES",
    "JobHistoryEntry",
]
