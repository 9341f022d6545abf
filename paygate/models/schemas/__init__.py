from .base import ResponseBase
from .jobs import JobSubmission, JobView, JobEvent, JobHistoryItem, JobHistoryPage, JobStatistics

__all__ = [
    "ResponseBase",
    "JobSubmission",
    "JobView",
    "JobEvent",
    "JobHistoryItem",
    "JobHistoryPage",
    "JobStatistics",
]
