import pytest

from paygate.integrations.base import CheckError, ExecutionError, InvoiceError
from paygate.integrations.event_log import EventLogPublisher
from paygate.integrations.mock_wallet import MockLightningWallet
from paygate.integrations.ollama import EchoExecutor, OllamaExecutor, create_executor
from paygate.models.db.enums import FeedbackKind, PaymentStatus
from paygate.utils.time import ManualClock


def test_mock_wallet_settles_after_delay():
    clock = ManualClock()
    wallet = MockLightningWallet(failure_rate=0.0, settle_after_seconds=(10, 10), clock=clock)
    invoice = wallet.issue_invoice(21, "Compute job: abcd1234")
    assert invoice.renderable_invoice.startswith("lnbcrt21n1p")
    assert wallet.check_status(invoice.payment_reference).status == PaymentStatus.PENDING
    clock.advance(10)
    check = wallet.check_status(invoice.payment_reference)
    assert check.status == PaymentStatus.PAID
    assert check.amount_paid == 21


def test_mock_wallet_expires_unpaid_invoice():
    clock = ManualClock()
    wallet = MockLightningWallet(failure_rate=0.0, settle_after_seconds=None, expiry_seconds=60, clock=clock)
    invoice = wallet.issue_invoice(5, "memo")
    clock.advance(60)
    assert wallet.check_status(invoice.payment_reference).status == PaymentStatus.EXPIRED


def test_mock_wallet_errors():
    wallet = MockLightningWallet(failure_rate=0.0)
    with pytest.raises(InvoiceError):
        wallet.issue_invoice(0, "memo")
    with pytest.raises(CheckError):
        wallet.check_status("unknown")
    always_failing = MockLightningWallet(failure_rate=1.0)
    with pytest.raises(InvoiceError):
        always_failing.issue_invoice(10, "memo")


def test_event_log_keeps_per_job_order_and_bounds():
    log = EventLogPublisher(max_events_per_job=3, max_jobs=2, clock=ManualClock())
    log.publish("a", FeedbackKind.PAYMENT_REQUIRED, "lnbc...")
    log.publish("a", FeedbackKind.PROCESSING)
    log.publish_result("a", "output", 10, "ref")
    log.publish("a", FeedbackKind.SUCCESS)
    assert log.kinds_for("a") == ["processing", "result", "success"]
    log.publish("b", FeedbackKind.ERROR, "x")
    log.publish("c", FeedbackKind.ERROR, "y")
    assert log.events_for("a") == []
    assert log.kinds_for("c") == ["error"]


def test_ollama_request_forwards_known_params():
    executor = OllamaExecutor("http://ollama:11434/", default_model="gemma2:2b")
    body = executor.build_request({"prompt": "hi", "params": {"max_tokens": 32, "temperature": 0.1, "unknown": 1}})
    assert body["model"] == "gemma2:2b"
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert body["max_tokens"] == 32 and body["temperature"] == 0.1
    assert "unknown" not in body
    assert executor.base_url == "http://ollama:11434"


def test_executors_require_prompt():
    with pytest.raises(ExecutionError):
        OllamaExecutor().build_request({"params": {}})
    with pytest.raises(ExecutionError):
        EchoExecutor().execute({})
    assert EchoExecutor().execute({"prompt": "hi"}) == "echo: hi"


def test_create_executor_selects_backend(monkeypatch):
    from paygate.config import EXECUTOR_SETTINGS

    monkeypatch.setitem(EXECUTOR_SETTINGS, "backend", "ollama")
    assert isinstance(create_executor(), OllamaExecutor)
    monkeypatch.setitem(EXECUTOR_SETTINGS, "backend", "mock")
    assert isinstance(create_executor(), EchoExecutor)


def test_mock_wallet_manual_settlement_hooks():
    wallet = MockLightningWallet(failure_rate=0.0, settle_after_seconds=None)
    paid = wallet.issue_invoice(10, "a")
    gone = wallet.issue_invoice(10, "b")
    wallet.mark_paid(paid.payment_reference)
    wallet.mark_expired(gone.payment_reference)
    assert wallet.invoice_count() == 2
    assert wallet.check_status(paid.payment_reference).status == PaymentStatus.PAID
    assert wallet.check_status(gone.payment_reference).status == PaymentStatus.EXPIRED


def test_mock_wallet_prunes_resolved_invoices_after_retention():
    clock = ManualClock()
    wallet = MockLightningWallet(failure_rate=0.0, settle_after_seconds=None, expiry_seconds=3600, retention_seconds=60, clock=clock)
    paid = wallet.issue_invoice(10, "paid")
    pending = wallet.issue_invoice(10, "pending")
    wallet.mark_paid(paid.payment_reference)
    assert wallet.check_status(paid.payment_reference).status == PaymentStatus.PAID

    clock.advance(30)
    wallet.issue_invoice(10, "next")
    assert wallet.invoice_count() == 3

    clock.advance(30)
    wallet.issue_invoice(10, "later")
    assert wallet.invoice_count() == 3
    with pytest.raises(CheckError):
        wallet.check_status(paid.payment_reference)
    assert wallet.check_status(pending.payment_reference).status == PaymentStatus.PENDING
