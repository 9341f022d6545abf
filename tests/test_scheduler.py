import time
from dataclasses import replace

from paygate.jobs.scheduler import LAST_EXCEPTIONS, PollScheduler
from paygate.models.db.enums import JobStatus, PaymentStatus
from paygate.utils.time import utc_now

PAYLOAD = {"prompt": "ping", "model": "gemma2:2b", "params": {}}


def test_tick_respects_backoff_gate(recon_engine, scheduler, clock, wallet):
    job_id = recon_engine.submit(PAYLOAD, 20)
    clock.advance(4.9)
    assert scheduler.tick() == []
    clock.advance(0.1)
    assert scheduler.tick() == [job_id]
    # next check only after 7.5s more
    clock.advance(7.4)
    assert scheduler.tick() == []
    clock.advance(0.1)
    assert scheduler.tick() == [job_id]
    assert wallet.checks[recon_engine.get_job(job_id).payment_reference] == 2


def test_jobs_back_off_independently(recon_engine, scheduler, clock):
    first = recon_engine.submit(PAYLOAD, 20)
    clock.advance(3)
    second = recon_engine.submit(PAYLOAD, 20)
    clock.advance(2)
    assert scheduler.tick() == [first]
    clock.advance(3)
    assert scheduler.tick() == [second]


def test_in_flight_job_is_not_dispatched_twice(recon_engine, scheduler, clock):
    job_id = recon_engine.submit(PAYLOAD, 20)
    scheduler._in_flight.add(job_id)
    clock.advance(5)
    assert scheduler.tick() == []
    scheduler._release(job_id)
    assert scheduler.tick() == [job_id]


def test_timed_out_in_flight_job_is_swept_later(make_engine, settings, clock):
    engine = make_engine(replace(settings, job_timeout=10.0))
    sched = PollScheduler(engine, inline=True)
    job_id = engine.submit(PAYLOAD, 20)
    sched._in_flight.add(job_id)
    clock.advance(11)
    sched.tick()
    assert engine.get_job(job_id) is not None
    sched._release(job_id)
    sched.tick()
    assert engine.get_job(job_id) is None


def test_stopped_scheduler_does_not_tick(recon_engine, scheduler, clock, wallet):
    job_id = recon_engine.submit(PAYLOAD, 20)
    wallet.script(recon_engine.get_job(job_id).payment_reference, PaymentStatus.PAID)
    scheduler.stop()
    clock.advance(5)
    assert scheduler.tick() == []
    assert recon_engine.get_job(job_id).status == JobStatus.AWAITING_PAYMENT


def test_work_after_registry_close_is_dropped(recon_engine, scheduler, clock):
    job_id = recon_engine.submit(PAYLOAD, 20)
    recon_engine.registry.close()
    clock.advance(5)
    before = len(LAST_EXCEPTIONS)
    scheduler._run_job(job_id, recon_engine.poll, "poll")
    assert len(LAST_EXCEPTIONS) == before
    assert job_id not in scheduler._in_flight


def test_background_thread_processes_paid_job(recon_engine, wallet, executor):
    # real clock and thread pool
    recon_engine.clock = utc_now
    recon_engine.settings = replace(recon_engine.settings, poll_initial_delay=0.0, global_tick_interval=0.02)
    wallet.default = PaymentStatus.PAID
    sched = PollScheduler(recon_engine)
    job_id = recon_engine.submit(PAYLOAD, 20)
    sched.start()
    try:
        deadline = time.time() + 5
        while recon_engine.get_job(job_id) is not None and time.time() < deadline:
            time.sleep(0.02)
        assert sched.is_running
    finally:
        sched.stop(close_registry=False)
    assert recon_engine.get_job(job_id) is None
    assert len(executor.calls) == 1
    assert sched.snapshot()["running"] is False
