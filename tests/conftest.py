import os
import sys
from pathlib import Path
from collections import defaultdict
from typing import Any, Mapping, Optional
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'paygate' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from paygate.main import app  # type: ignore
from paygate.database import Base  # type: ignore
from paygate.api import deps  # type: ignore
"""Pytest fixtures and collaborator fakes.

The engine is always built with a ManualClock and an inline scheduler, so
tests drive time explicitly: advance the clock, then ``scheduler.tick()``.
"""
from paygate.config import EngineSettings
from paygate.integrations.base import ExecutionError, Invoice, PaymentCheck
from paygate.integrations.event_log import EventLogPublisher
from paygate.jobs.registry import InMemoryJobRegistry
from paygate.jobs.scheduler import PollScheduler
from paygate.models.db.enums import PaymentStatus
from paygate.models.db.job_history import JobHistoryEntry
from paygate.services.alerting import clear_alerts
from paygate.services.job_history import JobHistoryRecorder
from paygate.services.reconciliation_engine import ReconciliationEngine
from paygate.utils.circuit_breaker import CircuitBreaker, GLOBAL_CIRCUIT_BREAKER
from paygate.utils.ratelimiter import rate_limiter
from paygate.utils.time import ManualClock

# File-based SQLite so poll worker threads and the test thread share one database.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_paygate.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Recorders created without an explicit factory must also hit the test database.
import paygate.database as _paygate_database  # noqa: E402
_paygate_database.SessionLocal = TestingSessionLocal  # type: ignore
import paygate.services.job_history as _history_mod  # noqa: E402
_history_mod.SessionLocal = TestingSessionLocal  # type: ignore


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    try:
        os.remove("test_paygate.db")
    except OSError:
        pass


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolate_test_state():
    """Reset process-wide state: breaker counters, rate windows, alerts, ledger rows."""
    def _clean():
        GLOBAL_CIRCUIT_BREAKER.reset()
        rate_limiter.reset()
        clear_alerts()
        session = TestingSessionLocal()
        try:
            session.query(JobHistoryEntry).delete()
            session.commit()
        finally:
            session.close()
    _clean()
    yield
    _clean()


# ---------- Collaborator fakes ----------

class FakeWallet:
    """Scripted invoice issuer and status checker.

    ``script(ref, ...)`` queues outcomes for successive checks; each item is a
    PaymentStatus or an exception instance to raise. Once the queue is empty
    the ``default`` status is returned.
    """

    def __init__(self, default: PaymentStatus = PaymentStatus.PENDING):
        self.default = default
        self.fail_invoice: Optional[Exception] = None
        self.issued: list[tuple[int, str]] = []
        self.amounts: dict[str, int] = {}
        self.checks: dict[str, int] = defaultdict(int)
        self._scripts: dict[str, list[Any]] = defaultdict(list)
        self._counter = 0

    def issue_invoice(self, amount_units: int, memo: str) -> Invoice:
        if self.fail_invoice is not None:
            raise self.fail_invoice
        self._counter += 1
        ref = f"hash{self._counter:04d}"
        self.issued.append((amount_units, memo))
        self.amounts[ref] = amount_units
        return Invoice(payment_reference=ref, renderable_invoice=f"lnbc{amount_units}n1{ref}", amount_units=amount_units)

    def script(self, ref: str, *outcomes: Any) -> None:
        self._scripts[ref].extend(outcomes)

    def check_status(self, payment_reference: str) -> PaymentCheck:
        self.checks[payment_reference] += 1
        queue = self._scripts[payment_reference]
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, Exception):
            raise outcome
        amount = None
        if outcome == PaymentStatus.PAID:
            amount = self.amounts.get(payment_reference)
        return PaymentCheck(status=outcome, amount_paid=amount)


class RecordingExecutor:
    def __init__(self):
        self.calls: list[Mapping[str, Any]] = []
        self.fail_next = 0
        self.error: Exception = ExecutionError("backend unavailable")

    def execute(self, request_payload: Mapping[str, Any]) -> str:
        self.calls.append(request_payload)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error
        return f"result for: {request_payload.get('prompt')}"


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def wallet():
    return FakeWallet()


@pytest.fixture()
def executor():
    return RecordingExecutor()


@pytest.fixture()
def event_log(clock):
    return EventLogPublisher(clock=clock)


@pytest.fixture()
def registry():
    return InMemoryJobRegistry()


@pytest.fixture()
def settings():
    return EngineSettings(
        optimistic_threshold=3,
        optimistic_retry_cooldown=None,
        poll_initial_delay=5.0,
        poll_factor=1.5,
        poll_max_delay=60.0,
        global_tick_interval=1.0,
        max_concurrent_jobs=4,
        job_timeout=600.0,
        allow_free_jobs=False,
    )


@pytest.fixture()
def make_engine(registry, wallet, executor, event_log, clock):
    def _make(settings: EngineSettings, **kwargs):
        return ReconciliationEngine(
            kwargs.pop("registry", registry),
            invoice_issuer=wallet,
            status_checker=wallet,
            executor=executor,
            feedback=kwargs.pop("feedback", event_log),
            results=kwargs.pop("results", event_log),
            settings=settings,
            history=JobHistoryRecorder(TestingSessionLocal),
            breaker=CircuitBreaker(),
            clock=clock,
            **kwargs,
        )
    return _make


@pytest.fixture()
def recon_engine(make_engine, settings):
    return make_engine(settings)


@pytest.fixture()
def scheduler(recon_engine):
    return PollScheduler(recon_engine, inline=True)


@pytest.fixture()
def advance(clock, scheduler):
    """Advance the clock by ``seconds`` and run one scheduler tick."""
    def _advance(seconds: float):
        clock.advance(seconds)
        return scheduler.tick()
    return _advance


@pytest.fixture()
def poll_until(recon_engine, clock, scheduler):
    """Advance to each successive poll due time; returns after ``n`` polls."""
    def _poll(job_id: str, n: int = 1):
        for _ in range(n):
            job = recon_engine.get_job(job_id)
            if job is None:
                return
            clock.advance(recon_engine.backoff_for(job.poll_attempts))
            scheduler.tick()
    return _poll


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def client(recon_engine, event_log, scheduler):
    """TestClient without lifespan; app.state points at the test engine."""
    app.state.engine = recon_engine  # type: ignore[attr-defined]
    app.state.event_log = event_log  # type: ignore[attr-defined]
    app.state.scheduler = scheduler  # type: ignore[attr-defined]
    yield TestClient(app)
    for name in ("engine", "event_log", "scheduler"):
        if hasattr(app.state, name):
            delattr(app.state, name)
