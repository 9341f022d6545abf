from datetime import datetime, timedelta, timezone

from paygate.jobs.job import Job
from paygate.models.db.enums import JobStatus
from paygate.services.job_history import JobHistoryRecorder, compute_statistics, get_history_entry, list_history

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _job(job_id, amount=20, model="gemma2:2b", **changes):
    payload = {"prompt": "Explain   payment\nchannels " * 20, "model": model, "params": {"max_tokens": 64}}
    return Job.create(payload, amount, START, job_id=job_id).evolve(payment_reference=f"ref-{job_id}", **changes)


def _record(recorder, job, status, seconds=2.0, **kwargs):
    return recorder.record(job, status, START + timedelta(seconds=seconds), **kwargs)


def test_record_writes_summaries_and_timing(db_session, session_factory):
    recorder = JobHistoryRecorder(session_factory)
    entry = _record(recorder, _job("h1", amount_paid=20), JobStatus.COMPLETED, seconds=1.5, result_content="done")
    assert entry is not None
    row = get_history_entry(db_session, "h1")
    assert row.status == JobStatus.COMPLETED
    assert row.processing_ms == 1500.0
    assert row.request_params == {"max_tokens": 64}
    assert len(row.input_summary) <= 120
    assert "\n" not in row.input_summary
    assert row.result_summary == "done"


def test_duplicate_record_is_ignored(db_session, session_factory):
    recorder = JobHistoryRecorder(session_factory)
    assert _record(recorder, _job("dup"), JobStatus.EXPIRED) is not None
    assert _record(recorder, _job("dup"), JobStatus.COMPLETED) is None
    assert get_history_entry(db_session, "dup").status == JobStatus.EXPIRED


def test_list_history_filters_and_pages(db_session, session_factory):
    recorder = JobHistoryRecorder(session_factory)
    for i in range(5):
        _record(recorder, _job(f"c{i}"), JobStatus.COMPLETED, seconds=i + 1)
    _record(recorder, _job("f1"), JobStatus.FAILED, seconds=10, error_detail="boom")
    rows, total = list_history(db_session, limit=2, offset=0)
    assert total == 6
    assert [r.job_id for r in rows] == ["f1", "c4"]
    rows, total = list_history(db_session, status=JobStatus.COMPLETED, limit=10)
    assert total == 5


def test_statistics_combine_ledger_and_pending_count(db_session, session_factory):
    recorder = JobHistoryRecorder(session_factory)
    _record(recorder, _job("s1", amount=20, amount_paid=20), JobStatus.COMPLETED, seconds=2)
    _record(recorder, _job("s2", amount=30, model="llama3"), JobStatus.COMPLETED, seconds=4)
    _record(recorder, _job("s3"), JobStatus.FAILED)
    _record(recorder, _job("s4", optimistically_executed=True), JobStatus.EXPIRED, uncompensated=True)
    stats = compute_statistics(db_session, jobs_pending_payment=3)
    assert stats.total_jobs_processed == 4
    assert stats.total_successful_jobs == 2
    assert stats.total_failed_jobs == 1
    assert stats.total_expired_jobs == 1
    assert stats.total_revenue_units == 50
    assert stats.jobs_pending_payment == 3
    assert stats.uncompensated_jobs == 1
    assert stats.average_processing_time_ms == 3000.0
    assert stats.model_usage_counts == {"gemma2:2b": 3, "llama3": 1}


def test_statistics_on_empty_ledger(db_session):
    stats = compute_statistics(db_session)
    assert stats.total_jobs_processed == 0
    assert stats.average_processing_time_ms is None
    assert stats.model_usage_counts == {}
