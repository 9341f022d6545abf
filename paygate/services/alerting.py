"""Alert creation for reconciliation outcomes that need operator attention.

Rules (MVP):
1. Job expired after optimistic execution -> UNCOMPENSATED_WORK, severity CRITICAL.
   Work was delivered for a payment that never settled.
2. Job expired with no execution -> no alert (the requester simply never paid).
3. Confirmed-payment execution failed -> EXECUTION_FAILED_AFTER_PAYMENT, severity HIGH.
   The requester paid and received nothing; refunds are handled out of band.

Alerts are emitted as structured log records plus an audit business event and
kept in a bounded in-process buffer for inspection.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Optional

from paygate.jobs.job import Job
from paygate.models.db.enums import AlertSeverity
from paygate.utils import get_logger, log_business_event
from paygate.utils.time import utc_now

logger = get_logger(__name__)

UNCOMPENSATED_WORK = "UNCOMPENSATED_WORK"
EXECUTION_FAILED_AFTER_PAYMENT = "EXECUTION_FAILED_AFTER_PAYMENT"


@dataclass(frozen=True)
class Alert:
    alert_type: str
    severity: AlertSeverity
    job_id: str
    title: str
    message: str
    created_at: datetime
    details: dict = field(default_factory=dict)


_RECENT_ALERTS: Deque[Alert] = deque(maxlen=500)
_alerts_lock = threading.Lock()


def _emit(alert: Alert) -> Alert:
    with _alerts_lock:
        _RECENT_ALERTS.append(alert)
    log = logger.critical if alert.severity == AlertSeverity.CRITICAL else logger.error
    log(alert.title, alert_type=alert.alert_type, severity=alert.severity.value, job_id=alert.job_id, **alert.details)
    log_business_event(
        event_type=f"alert_{alert.alert_type.lower()}",
        details={"severity": alert.severity.value, **alert.details},
        job_id=alert.job_id,
    )
    return alert


def raise_uncompensated_work_alert(job: Job, now: Optional[datetime] = None) -> Alert:
    """Signal that optimistic work was delivered but payment never confirmed."""
    return _emit(
        Alert(
            alert_type=UNCOMPENSATED_WORK,
            severity=AlertSeverity.CRITICAL,
            job_id=job.id,
            title="Uncompensated work: job expired after optimistic execution",
            message="Result was delivered before payment settled and the payment never confirmed.",
            created_at=now or utc_now(),
            details={
                "amount_units": job.amount_units,
                "payment_reference": (job.payment_reference or "")[:16] or None,
                "poll_attempts": job.poll_attempts,
            },
        )
    )


def raise_paid_execution_failure_alert(job: Job, error: str, now: Optional[datetime] = None) -> Alert:
    return _emit(
        Alert(
            alert_type=EXECUTION_FAILED_AFTER_PAYMENT,
            severity=AlertSeverity.HIGH,
            job_id=job.id,
            title="Paid job failed during execution",
            message="Payment was confirmed but the job could not be delivered.",
            created_at=now or utc_now(),
            details={"amount_units": job.amount_units, "error": error[:256]},
        )
    )


def recent_alerts(alert_type: Optional[str] = None) -> list[Alert]:
    with _alerts_lock:
        alerts = list(_RECENT_ALERTS)
    if alert_type is None:
        return alerts
    return [a for a in alerts if a.alert_type == alert_type]


def clear_alerts() -> None:
    with _alerts_lock:
        _RECENT_ALERTS.clear()


__all__ = [
    "Alert",
    "UNCOMPENSATED_WORK",
    "EXECUTION_FAILED_AFTER_PAYMENT",
    "raise_uncompensated_work_alert",
    "raise_paid_execution_failure_alert",
    "recent_alerts",
    "clear_alerts",
]
