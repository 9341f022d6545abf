from .base import (
    CollaboratorError,
    InvoiceError,
    CheckError,
    ExecutionError,
    PublishError,
    Invoice,
    PaymentCheck,
    InvoiceIssuer,
    PaymentStatusChecker,
    JobExecutor,
    FeedbackPublisher,
    ResultPublisher,
)

__all__ = [
    "CollaboratorError",
    "InvoiceError",
    "CheckError",
    "ExecutionError",
    "PublishError",
    "Invoice",
    "PaymentCheck",
    "InvoiceIssuer",
    "PaymentStatusChecker",
    "JobExecutor",
    "FeedbackPublisher",
    "ResultPublisher",
]
