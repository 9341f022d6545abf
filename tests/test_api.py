from fastapi.testclient import TestClient

from paygate.config import RATE_LIMIT_SETTINGS
from paygate.integrations.base import InvoiceError
from paygate.models.db.enums import PaymentStatus


def _submit(client: TestClient, **body):
    payload = {"prompt": "Write a haiku about invoices"}
    payload.update(body)
    return client.post("/api/v1/jobs/", json=payload)


def test_submit_returns_payment_request(client: TestClient, wallet):
    r = _submit(client)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["status"] == "AWAITING_PAYMENT"
    assert data["active"] is True
    assert data["invoice"].startswith("lnbc")
    # quoted from prompt size: floor applies
    assert data["amount_units"] == 10
    assert r.headers.get("X-Request-ID")
    assert r.headers.get("X-RateLimit-Limit") == str(RATE_LIMIT_SETTINGS["job_submit"]["limit"])


def test_explicit_price_and_model_are_used(client: TestClient, recon_engine):
    r = _submit(client, amount_units=42, model="llama3", params={"temperature": 0.2})
    data = r.json()["data"]
    job = recon_engine.get_job(data["job_id"])
    assert job.amount_units == 42
    assert job.request_payload["model"] == "llama3"
    assert job.request_payload["params"] == {"temperature": 0.2}


def test_free_job_rejected(client: TestClient):
    r = _submit(client, amount_units=0)
    assert r.status_code == 422
    assert r.json()["success"] is False


def test_blank_prompt_fails_validation(client: TestClient):
    r = client.post("/api/v1/jobs/", json={"prompt": "   "})
    assert r.status_code == 422
    assert r.json()["message"] == "Request validation failed"


def test_invoice_failure_reports_bad_gateway(client: TestClient, wallet):
    wallet.fail_invoice = InvoiceError("node offline")
    r = _submit(client)
    assert r.status_code == 502
    assert "node offline" in r.json()["message"]


def test_job_lifecycle_visible_through_api(client: TestClient, recon_engine, wallet, poll_until):
    job_id = _submit(client).json()["data"]["job_id"]
    r = client.get(f"/api/v1/jobs/{job_id}")
    assert r.status_code == 200 and r.json()["active"] is True

    listed = client.get("/api/v1/jobs/").json()
    assert [j["job_id"] for j in listed] == [job_id]

    wallet.script(recon_engine.get_job(job_id).payment_reference, PaymentStatus.PAID)
    poll_until(job_id, 1)

    r = client.get(f"/api/v1/jobs/{job_id}")
    assert r.status_code == 200
    view = r.json()
    assert view["status"] == "COMPLETED"
    assert view["active"] is False
    assert view["finished_at"] is not None

    events = client.get(f"/api/v1/jobs/{job_id}/events").json()
    assert [e["kind"] for e in events] == ["payment-required", "processing", "result", "success"]
    assert client.get("/api/v1/jobs/").json() == []


def test_unknown_job_is_404(client: TestClient):
    assert client.get("/api/v1/jobs/nope").status_code == 404
    assert client.get("/api/v1/jobs/nope/events").status_code == 404
    assert client.get("/api/v1/history/nope").status_code == 404


def test_history_and_stats(client: TestClient, recon_engine, wallet, poll_until):
    paid = _submit(client, amount_units=25).json()["data"]["job_id"]
    expired = _submit(client).json()["data"]["job_id"]
    _submit(client)  # stays pending
    wallet.script(recon_engine.get_job(paid).payment_reference, PaymentStatus.PAID)
    wallet.script(recon_engine.get_job(expired).payment_reference, PaymentStatus.EXPIRED)
    poll_until(paid, 1)

    page = client.get("/api/v1/history/", params={"limit": 10}).json()
    assert page["total"] == 2
    assert {i["job_id"] for i in page["items"]} == {paid, expired}

    only_completed = client.get("/api/v1/history/", params={"status": "COMPLETED"}).json()
    assert [i["job_id"] for i in only_completed["items"]] == [paid]

    stats = client.get("/api/v1/history/stats").json()
    assert stats["total_jobs_processed"] == 2
    assert stats["total_successful_jobs"] == 1
    assert stats["total_expired_jobs"] == 1
    assert stats["total_revenue_units"] == 25
    assert stats["jobs_pending_payment"] == 1

    item = client.get(f"/api/v1/history/{expired}").json()
    assert item["status"] == "EXPIRED"
    assert item["error_detail"] == "payment expired"


def test_provider_start_stop_status(client: TestClient):
    status = client.get("/api/v1/provider/status").json()
    assert status["data"]["listening"] is False
    assert status["data"]["registry"]["backend"] == "memory"

    r = client.post("/api/v1/provider/start")
    assert r.status_code == 200
    assert r.json()["data"]["listening"] is True
    assert client.post("/api/v1/provider/start").json()["message"] == "Provider already listening"

    r = client.post("/api/v1/provider/stop")
    assert r.json()["data"]["listening"] is False
    assert r.json()["data"]["registry"]["closed"] is False


def test_provider_cannot_restart_after_shutdown(client: TestClient, recon_engine):
    recon_engine.shutdown()
    assert client.post("/api/v1/provider/start").status_code == 409
    assert _submit(client).status_code == 503


def test_submission_rate_limit(client: TestClient, monkeypatch):
    monkeypatch.setitem(RATE_LIMIT_SETTINGS, "job_submit", {"limit": 2, "window_seconds": 60})
    assert _submit(client).status_code == 201
    assert _submit(client).status_code == 201
    r = _submit(client)
    assert r.status_code == 429
    assert r.headers.get("X-RateLimit-Remaining") == "0"
    # queries use their own budget
    assert client.get("/api/v1/jobs/").status_code == 200


def test_health_endpoints(client: TestClient):
    assert client.get("/health").json()["status"] == "healthy"
    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"] == "healthy"
    assert detailed["checks"]["registry"]["backend"] == "memory"
    assert "scheduler" in detailed["checks"]
    assert client.get("/").json()["api_base"] == "/api/v1"
