from dataclasses import fields
import threading
from datetime import datetime, timezone
import pytest

from paygate.jobs.job import Job
from paygate.jobs.registry import DuplicateJobError, InMemoryJobRegistry, RegistryClosedError
from paygate.models.db.enums import JobStatus

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _job(job_id="job-1"):
    return Job.create({"prompt": "hi"}, 10, NOW, job_id=job_id)


def test_put_get_and_duplicate_rejected():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    assert reg.get("job-1").amount_units == 10
    with pytest.raises(DuplicateJobError):
        reg.put(_job())


def test_retired_ids_are_never_reused():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    assert reg.delete("job-1") is not None
    assert reg.get("job-1") is None
    with pytest.raises(DuplicateJobError):
        reg.put(_job())


def test_update_miss_leaves_entry_untouched():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    assert reg.update("job-1", lambda j: None) is None
    assert reg.update("missing", lambda j: j.evolve(poll_attempts=1)) is None
    assert reg.get("job-1").poll_attempts == 0


def test_update_rejects_id_change():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    with pytest.raises(ValueError):
        reg.update("job-1", lambda j: j.evolve(id="other"))


def test_concurrent_increments_are_linearized():
    reg = InMemoryJobRegistry()
    reg.put(_job())

    def bump():
        for _ in range(200):
            reg.update("job-1", lambda j: j.evolve(poll_attempts=j.poll_attempts + 1))

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert reg.get("job-1").poll_attempts == 1600


def test_guarded_transition_applies_once():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    results = []

    def claim():
        results.append(reg.update(
            "job-1",
            lambda j: j.evolve(status=JobStatus.OPTIMISTICALLY_PROCESSING) if j.status == JobStatus.AWAITING_PAYMENT else None,
        ))

    threads = [threading.Thread(target=claim) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(1 for r in results if r is not None) == 1


def test_closed_registry_rejects_writes_but_allows_reads():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    reg.close()
    assert reg.closed is True
    assert reg.get("job-1") is not None
    with pytest.raises(RegistryClosedError):
        reg.update("job-1", lambda j: j.evolve(poll_attempts=1))
    with pytest.raises(RegistryClosedError):
        reg.delete("job-1")
    with pytest.raises(RegistryClosedError):
        reg.put(_job("job-2"))


def test_snapshot_counts_by_status():
    reg = InMemoryJobRegistry()
    reg.put(_job("a"))
    reg.put(_job("b").evolve(status=JobStatus.OPTIMISTICALLY_PROCESSING))
    reg.put(_job("c"))
    reg.delete("c")
    snap = reg.snapshot()
    assert snap["active"] == 2
    assert snap["awaiting_payment"] == 1
    assert snap["optimistically_processing"] == 1
    assert snap["retired"] == 1
    assert len(reg) == 2


def test_job_dict_round_trip_keeps_flags():
    job = _job().evolve(
        payment_reference="ref",
        poll_attempts=4,
        optimistically_executed=True,
        execution_claimed=True,
        optimistic_retry_at=NOW,
        status=JobStatus.OPTIMISTICALLY_PROCESSING,
    )
    assert Job.from_dict(job.to_dict()) == job


def test_job_dict_carries_exactly_the_record_fields():
    assert set(_job().to_dict()) == {f.name for f in fields(Job)}


def test_purge_reopens_and_forgets_retired_ids():
    reg = InMemoryJobRegistry()
    reg.put(_job())
    reg.delete("job-1")
    reg.close()
    reg.purge()
    assert reg.closed is False
    reg.put(_job())
    assert reg.get("job-1") is not None
