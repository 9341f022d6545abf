from datetime import datetime, timedelta, timezone

from paygate.jobs.job import Job
from paygate.models.db.enums import JobStatus
from paygate.services.optimistic_policy import should_process_optimistically

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _job(**changes):
    return Job.create({"prompt": "hi"}, 10, NOW).evolve(payment_reference="ref", **changes)


def test_below_threshold_is_not_trusted():
    assert should_process_optimistically(_job(poll_attempts=2), 3) is False


def test_threshold_reached_is_trusted():
    assert should_process_optimistically(_job(poll_attempts=3), 3) is True
    assert should_process_optimistically(_job(poll_attempts=7), 3) is True


def test_already_executed_is_never_trusted_again():
    job = _job(poll_attempts=5, optimistically_executed=True)
    assert should_process_optimistically(job, 3) is False


def test_only_awaiting_payment_jobs_qualify():
    job = _job(poll_attempts=5, status=JobStatus.OPTIMISTICALLY_PROCESSING)
    assert should_process_optimistically(job, 3) is False


def test_claimed_execution_blocks_optimistic_path():
    assert should_process_optimistically(_job(poll_attempts=5, execution_claimed=True), 3) is False


def test_retry_cooldown_gate():
    job = _job(poll_attempts=4, optimistic_retry_at=NOW + timedelta(seconds=10))
    assert should_process_optimistically(job, 3, now=NOW) is False
    assert should_process_optimistically(job, 3, now=NOW + timedelta(seconds=10)) is True
    # without a clock the cooldown is not evaluated
    assert should_process_optimistically(job, 3) is True


def test_default_threshold_from_config(monkeypatch):
    from paygate.config import OPTIMISTIC_POLICY

    monkeypatch.setitem(OPTIMISTIC_POLICY, "threshold", 1)
    assert should_process_optimistically(_job(poll_attempts=1)) is True
