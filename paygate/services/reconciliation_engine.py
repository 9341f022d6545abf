"""Reconciliation engine orchestrator.

Owns the job state machine:

    AWAITING_PAYMENT --paid--> execute --> COMPLETED | FAILED
    AWAITING_PAYMENT --pending, policy--> OPTIMISTICALLY_PROCESSING (result published)
    OPTIMISTICALLY_PROCESSING --paid--> COMPLETED (success feedback only)
    OPTIMISTICALLY_PROCESSING --execution failed--> AWAITING_PAYMENT (cooldown)
    any active --expired invoice | job timeout--> EXPIRED

Public entry points:
1. ``submit(request_payload, amount_units)`` - intake; issues the invoice.
2. ``poll(job_id)`` - one backoff-gated status check plus its consequences.
3. ``expire_if_timed_out(job_id)`` - absolute timeout sweep for one job.

Every state change goes through ``registry.update`` with a guard on the
current status, so a transition is applied at most once even if two callers
race. Collaborator failures are caught where the collaborator is called and
turned into a transition plus a feedback event; the only exceptions that
leave these methods are registry failures (e.g. ``RegistryClosedError`` once
shutdown has begun).

Feedback order per job: payment-required -> processing -> success | error.
A result is always published before the success feedback.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from paygate.config import EngineSettings
from paygate.integrations.base import (
    CheckError,
    ExecutionError,
    FeedbackPublisher,
    InvoiceError,
    InvoiceIssuer,
    JobExecutor,
    PaymentCheck,
    PaymentStatusChecker,
    PublishError,
    ResultPublisher,
)
from paygate.jobs.job import Job
from paygate.jobs.registry import JobRegistry, RegistryClosedError
from paygate.models.db.enums import ACTIVE_STATUSES, FeedbackKind, JobStatus, PaymentStatus
from paygate.services.alerting import raise_paid_execution_failure_alert, raise_uncompensated_work_alert
from paygate.services.job_history import JobHistoryRecorder
from paygate.services.optimistic_policy import should_process_optimistically
from paygate.utils import get_logger, log_business_event, log_performance
from paygate.utils.backoff import backoff_delay
from paygate.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER, CircuitBreaker
from paygate.utils.observability import short_id
from paygate.utils.time import Clock, utc_now

logger = get_logger(__name__)

CHECKER_BREAKER_KEY = "payment_checker"
EXECUTOR_BREAKER_KEY = "executor"

PAYMENT_EXPIRED_DETAIL = "payment expired"
PAYMENT_TIMEOUT_DETAIL = "payment not confirmed in time"


class JobRejectedError(ValueError):
    """Submission refused before any job was created."""


class ReconciliationEngine:
    def __init__(
        self,
        registry: JobRegistry,
        *,
        invoice_issuer: InvoiceIssuer,
        status_checker: PaymentStatusChecker,
        executor: JobExecutor,
        feedback: FeedbackPublisher,
        results: ResultPublisher,
        settings: Optional[EngineSettings] = None,
        history: Optional[JobHistoryRecorder] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.registry = registry
        self.invoice_issuer = invoice_issuer
        self.status_checker = status_checker
        self.executor = executor
        self.feedback = feedback
        self.results = results
        self.settings = settings or EngineSettings.from_config()
        self.history = history
        self.breaker = breaker or GLOBAL_CIRCUIT_BREAKER
        self.clock = clock

    # ----------------------------- scheduling helpers ----------------------------- #
    def backoff_for(self, attempts: int) -> float:
        s = self.settings
        return backoff_delay(attempts, initial=s.poll_initial_delay, factor=s.poll_factor, max_delay=s.poll_max_delay)

    def is_poll_due(self, job: Job, now: datetime) -> bool:
        """Backoff gate: active, invoiced, and ``last_polled_at + delay <= now``."""
        if job.status not in ACTIVE_STATUSES or job.payment_reference is None:
            return False
        return job.last_polled_at + timedelta(seconds=self.backoff_for(job.poll_attempts)) <= now

    def is_timed_out(self, job: Job, now: datetime) -> bool:
        if job.status not in ACTIVE_STATUSES or job.execution_claimed:
            return False
        return (now - job.created_at).total_seconds() > self.settings.job_timeout

    def _retry_cooldown(self, attempts: int) -> float:
        if self.settings.optimistic_retry_cooldown is not None:
            return float(self.settings.optimistic_retry_cooldown)
        return self.backoff_for(attempts)

    # ----------------------------- intake ----------------------------- #
    def submit(self, request_payload: Mapping[str, Any], amount_units: int) -> str:
        """Create a job and start its payment gate. Returns the job id.

        Raises ``JobRejectedError`` for negative prices, and for zero prices
        unless free jobs are allowed. An invoice failure does not raise: the
        job is finalized as FAILED with error feedback and its id returned.
        """
        if amount_units < 0:
            raise JobRejectedError("amount_units must not be negative")
        if amount_units == 0 and not self.settings.allow_free_jobs:
            raise JobRejectedError("Free jobs are not accepted by this provider")

        now = self.clock()
        job = Job.create(request_payload, amount_units, now)
        self.registry.put(job)
        logger.info("Job accepted", job_id=job.id, amount_units=amount_units, model=job.request_payload.get("model"))

        if amount_units == 0:
            # Free job: no gate, execute right away.
            self._execute_confirmed(job, amount_paid=0)
            return job.id

        memo = f"{self.settings.invoice_memo_prefix}: {short_id(job.id)}"
        try:
            invoice = self.invoice_issuer.issue_invoice(amount_units, memo)
        except InvoiceError as e:
            self._fail_invoice(job, e.message)
            return job.id
        except Exception as e:  # collaborator boundary
            logger.error("Unexpected invoice issuer failure", job_id=job.id, error=str(e), exc_info=True)
            self._fail_invoice(job, "Invoice creation failed")
            return job.id

        invoiced = self.registry.update(
            job.id,
            lambda j: j.evolve(payment_reference=invoice.payment_reference, renderable_invoice=invoice.renderable_invoice)
            if j.status == JobStatus.AWAITING_PAYMENT and j.payment_reference is None
            else None,
        )
        if invoiced is None:
            logger.warning("Job left registry before invoice was attached", job_id=job.id)
            return job.id
        self._publish_feedback(job.id, FeedbackKind.PAYMENT_REQUIRED, invoice.renderable_invoice)
        log_business_event(
            event_type="job_invoiced",
            details={"amount_units": amount_units, "payment_reference": invoice.payment_reference[:16]},
            job_id=job.id,
        )
        return job.id

    def _fail_invoice(self, job: Job, message: str) -> None:
        logger.warning("Invoice creation failed; job will not be polled", job_id=job.id, error=message)
        self._finalize(
            job.id,
            JobStatus.FAILED,
            expected=(JobStatus.AWAITING_PAYMENT,),
            feedback_kind=FeedbackKind.ERROR,
            feedback_detail=f"Invoice creation failed: {message}",
            error_detail=message,
        )

    # ----------------------------- polling ----------------------------- #
    @staticmethod
    def _is_pollable(job: Job) -> bool:
        return job.status in ACTIVE_STATUSES and job.payment_reference is not None

    def poll(self, job_id: str) -> Optional[JobStatus]:
        """Run one status check for ``job_id`` and apply its outcome.

        Returns the job's status after the check (terminal statuses included),
        or None if the job was not pollable. A check held back by the open
        checker breaker is not a poll: the job's attempt count and backoff
        clock stay where they were.
        """
        now = self.clock()
        current = self.registry.get(job_id)
        if current is None or not self._is_pollable(current):
            return None
        check = self._check_payment(current)
        if check is None:
            return current.status
        polled = self.registry.update(
            job_id,
            lambda j: j.evolve(last_polled_at=now, poll_attempts=j.poll_attempts + 1)
            if self._is_pollable(j)
            else None,
        )
        if polled is None:
            return None
        logger.debug(
            "Payment status checked",
            job_id=job_id,
            status=check.status.value,
            poll_attempts=polled.poll_attempts,
        )
        return self._apply_check(polled, check, now)

    def _check_payment(self, job: Job) -> Optional[PaymentCheck]:
        """Ask the checker. None when the breaker refused the call; every
        collaborator failure degrades to ``pending``."""
        allowed, reason = self.breaker.allow_call(CHECKER_BREAKER_KEY)
        if not allowed:
            logger.warning("Status check skipped due to circuit breaker", job_id=job.id, reason=reason)
            return None
        pending = PaymentCheck(status=PaymentStatus.PENDING)
        try:
            check = self.status_checker.check_status(job.payment_reference or "")
        except CheckError as e:
            self.breaker.record_failure(CHECKER_BREAKER_KEY)
            logger.warning("Payment status check failed; treating as pending", job_id=job.id, error=e.message)
            return pending
        except Exception as e:  # collaborator boundary
            self.breaker.record_failure(CHECKER_BREAKER_KEY)
            logger.error("Unexpected status checker failure; treating as pending", job_id=job.id, error=str(e), exc_info=True)
            return pending
        self.breaker.record_success(CHECKER_BREAKER_KEY)
        if check.status == PaymentStatus.ERROR:
            logger.warning("Payment status reported error; treating as pending", job_id=job.id)
            return pending
        return check

    def _apply_check(self, job: Job, check: PaymentCheck, now: datetime) -> Optional[JobStatus]:
        if check.status == PaymentStatus.PAID:
            if job.status == JobStatus.OPTIMISTICALLY_PROCESSING:
                done = self._finalize(
                    job.id,
                    JobStatus.COMPLETED,
                    expected=(JobStatus.OPTIMISTICALLY_PROCESSING,),
                    feedback_kind=FeedbackKind.SUCCESS,
                    amount_paid=check.amount_paid,
                )
                return done.status if done else None
            return self._execute_confirmed(job, amount_paid=check.amount_paid)

        if check.status == PaymentStatus.EXPIRED:
            done = self._finalize(
                job.id,
                JobStatus.EXPIRED,
                expected=tuple(ACTIVE_STATUSES),
                feedback_kind=FeedbackKind.ERROR,
                feedback_detail=PAYMENT_EXPIRED_DETAIL,
                error_detail=PAYMENT_EXPIRED_DETAIL,
                flag_uncompensated=True,
                claimed=False,
            )
            return done.status if done else None

        if should_process_optimistically(job, self.settings.optimistic_threshold, now=now):
            return self._execute_optimistically(job, now)
        return job.status

    # ----------------------------- execution ----------------------------- #
    def _run_executor(self, job: Job) -> str:
        """Call the executor and feed the outcome to the ``executor`` breaker."""
        start = time.time()
        try:
            content = self.executor.execute(job.request_payload)
        except ExecutionError:
            self.breaker.record_failure(EXECUTOR_BREAKER_KEY)
            raise
        except Exception as e:  # collaborator boundary
            self.breaker.record_failure(EXECUTOR_BREAKER_KEY)
            raise ExecutionError("Job execution failed", cause=e) from e
        self.breaker.record_success(EXECUTOR_BREAKER_KEY)
        log_performance(
            operation="job_execution",
            duration_ms=(time.time() - start) * 1000,
            additional_data={"job_id": job.id, "model": job.request_payload.get("model")},
        )
        return content

    def _deliver_result(self, job: Job, content: str) -> None:
        try:
            self.results.publish_result(job.id, content, job.amount_units, job.payment_reference)
        except PublishError:
            raise
        except Exception as e:  # collaborator boundary
            raise PublishError("Failed to publish job result", cause=e) from e

    def _notify_processing(self, job: Job) -> None:
        """Publish "processing" once per job, right before the first execution."""
        marked = self.registry.update(
            job.id,
            lambda j: j.evolve(processing_notified=True) if not j.processing_notified else None,
        )
        if marked is not None:
            self._publish_feedback(job.id, FeedbackKind.PROCESSING)

    def _execute_confirmed(self, job: Job, *, amount_paid: Optional[int]) -> Optional[JobStatus]:
        """Paid (or free) job: execute, deliver, and settle in one step."""
        claimed = self.registry.update(
            job.id,
            lambda j: j.evolve(execution_claimed=True, amount_paid=amount_paid)
            if j.status == JobStatus.AWAITING_PAYMENT and not j.execution_claimed
            else None,
        )
        if claimed is None:
            logger.debug("Confirmed execution already claimed", job_id=job.id)
            current = self.registry.get(job.id)
            return current.status if current else None
        job = claimed
        self._notify_processing(job)
        try:
            content = self._run_executor(job)
            self._deliver_result(job, content)
        except (ExecutionError, PublishError) as e:
            logger.error("Paid job execution failed", job_id=job.id, error=e.message)
            if job.amount_units > 0:
                raise_paid_execution_failure_alert(job, e.message, self.clock())
            done = self._finalize(
                job.id,
                JobStatus.FAILED,
                expected=(JobStatus.AWAITING_PAYMENT,),
                feedback_kind=FeedbackKind.ERROR,
                feedback_detail=e.message,
                error_detail=e.message,
                claimed=True,
            )
            return done.status if done else None

        done = self._finalize(
            job.id,
            JobStatus.COMPLETED,
            expected=(JobStatus.AWAITING_PAYMENT,),
            feedback_kind=FeedbackKind.SUCCESS,
            result_content=content,
            claimed=True,
        )
        return done.status if done else None

    def _execute_optimistically(self, job: Job, now: datetime) -> Optional[JobStatus]:
        threshold = self.settings.optimistic_threshold
        claimed = self.registry.update(
            job.id,
            lambda j: j.evolve(
                status=JobStatus.OPTIMISTICALLY_PROCESSING,
                optimistically_executed=True,
                optimistic_retry_at=None,
            )
            if should_process_optimistically(j, threshold, now=now)
            else None,
        )
        if claimed is None:
            current = self.registry.get(job.id)
            return current.status if current else None

        allowed, reason = self.breaker.allow_call(EXECUTOR_BREAKER_KEY)
        if not allowed:
            released = self.registry.update(
                job.id,
                lambda j: j.evolve(status=JobStatus.AWAITING_PAYMENT, optimistically_executed=False)
                if j.status == JobStatus.OPTIMISTICALLY_PROCESSING
                else None,
            )
            logger.warning("Optimistic execution held back by circuit breaker", job_id=job.id, reason=reason)
            return released.status if released else None

        logger.info("Processing optimistically before payment confirmation", job_id=job.id, poll_attempts=claimed.poll_attempts)
        self._notify_processing(claimed)
        try:
            content = self._run_executor(claimed)
            self._deliver_result(claimed, content)
        except (ExecutionError, PublishError) as e:
            retry_at = now + timedelta(seconds=self._retry_cooldown(claimed.poll_attempts))
            reverted = self.registry.update(
                job.id,
                lambda j: j.evolve(
                    status=JobStatus.AWAITING_PAYMENT,
                    optimistically_executed=False,
                    optimistic_retry_at=retry_at,
                )
                if j.status == JobStatus.OPTIMISTICALLY_PROCESSING
                else None,
            )
            logger.warning(
                "Optimistic execution failed; job returned to awaiting payment",
                job_id=job.id,
                error=e.message,
                retry_after=retry_at.isoformat(),
            )
            return reverted.status if reverted else None

        current = self.registry.get(job.id)
        log_business_event(
            event_type="job_result_delivered_optimistically",
            details={"amount_units": claimed.amount_units, "poll_attempts": claimed.poll_attempts},
            job_id=job.id,
        )
        return current.status if current else None

    # ----------------------------- timeout sweep ----------------------------- #
    def expire_if_timed_out(self, job_id: str) -> bool:
        """Expire the job if it outlived ``job_timeout`` without confirmation."""
        now = self.clock()
        job = self.registry.get(job_id)
        if job is None or not self.is_timed_out(job, now):
            return False
        done = self._finalize(
            job_id,
            JobStatus.EXPIRED,
            expected=tuple(ACTIVE_STATUSES),
            feedback_kind=FeedbackKind.ERROR,
            feedback_detail=PAYMENT_TIMEOUT_DETAIL,
            error_detail=PAYMENT_TIMEOUT_DETAIL,
            flag_uncompensated=True,
            claimed=False,
        )
        return done is not None

    # ----------------------------- terminal transitions ----------------------------- #
    def _finalize(
        self,
        job_id: str,
        terminal: JobStatus,
        *,
        expected: Iterable[JobStatus],
        feedback_kind: FeedbackKind,
        feedback_detail: Optional[str] = None,
        error_detail: Optional[str] = None,
        result_content: Optional[str] = None,
        flag_uncompensated: bool = False,
        claimed: Optional[bool] = None,
        **changes: Any,
    ) -> Optional[Job]:
        """Claim the terminal transition, announce it, record it, then retire the job.

        ``claimed`` additionally requires ``execution_claimed`` to match.
        Returns the terminal snapshot, or None if another path already moved
        the job out of ``expected``.
        """
        allowed = frozenset(expected)

        def _terminate(j: Job) -> Optional[Job]:
            if j.status not in allowed:
                return None
            if claimed is not None and j.execution_claimed != claimed:
                return None
            return j.evolve(status=terminal, **changes)

        done = self.registry.update(job_id, _terminate)
        if done is None:
            return None

        uncompensated = flag_uncompensated and done.optimistically_executed
        self._publish_feedback(job_id, feedback_kind, feedback_detail)
        if uncompensated:
            raise_uncompensated_work_alert(done, self.clock())
        self._record_history(done, terminal, self.clock(), result_content=result_content, error_detail=error_detail, uncompensated=uncompensated)
        try:
            self.registry.delete(job_id)
        except RegistryClosedError:
            logger.warning("Registry closed before terminal job was removed", job_id=job_id, status=terminal.value)
        log_business_event(
            event_type=f"job_{terminal.value.lower()}",
            details={
                "amount_units": done.amount_units,
                "amount_paid": done.amount_paid,
                "poll_attempts": done.poll_attempts,
                "optimistically_executed": done.optimistically_executed,
                "uncompensated": uncompensated,
                "reason": error_detail,
            },
            job_id=job_id,
        )
        return done

    def _publish_feedback(self, job_id: str, kind: FeedbackKind, detail: Optional[str] = None) -> None:
        try:
            self.feedback.publish(job_id, kind, detail)
        except Exception as e:  # feedback is best effort; state already decided
            logger.warning("Failed to publish feedback", job_id=job_id, kind=kind.value, error=str(e))

    def _record_history(self, job: Job, status: JobStatus, finished_at: datetime, **kwargs: Any) -> None:
        if self.history is None:
            return
        try:
            self.history.record(job, status, finished_at, **kwargs)
        except Exception as e:  # ledger is not part of the state machine
            logger.error("Failed to record job history", job_id=job.id, error=str(e), exc_info=True)

    # ----------------------------- inspection ----------------------------- #
    def get_job(self, job_id: str) -> Optional[Job]:
        return self.registry.get(job_id)

    def active_jobs(self) -> list[Job]:
        return [j for j in self.registry.list_all() if j.status in ACTIVE_STATUSES]

    def pending_payment_count(self) -> int:
        return sum(1 for j in self.active_jobs() if j.status == JobStatus.AWAITING_PAYMENT)

    def shutdown(self) -> None:
        """Stop accepting state changes; later writes raise ``RegistryClosedError``."""
        self.registry.close()


__all__ = [
    "ReconciliationEngine",
    "JobRejectedError",
    "PAYMENT_EXPIRED_DETAIL",
    "PAYMENT_TIMEOUT_DETAIL",
    "CHECKER_BREAKER_KEY",
    "EXECUTOR_BREAKER_KEY",
]
