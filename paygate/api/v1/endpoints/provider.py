"""
Provider control endpoints: pause and resume polling, inspect scheduler state.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from paygate.api.deps import get_engine, get_scheduler
from paygate.jobs.scheduler import PollScheduler
from paygate.models.schemas.base import ResponseBase
from paygate.services.reconciliation_engine import ReconciliationEngine
from paygate.utils import get_logger, log_business_event
from paygate.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER

router = APIRouter()
logger = get_logger(__name__)


def _status_payload(scheduler: PollScheduler, engine: ReconciliationEngine) -> dict:
    return {
        "listening": scheduler.is_running,
        "scheduler": scheduler.snapshot(),
        "registry": engine.registry.snapshot(),
        "circuit_breakers": GLOBAL_CIRCUIT_BREAKER.snapshot(),
    }


@router.post("/start", response_model=ResponseBase, summary="Start polling for payments")
def start_provider(
    request: Request,
    scheduler: PollScheduler = Depends(get_scheduler),
    engine: ReconciliationEngine = Depends(get_engine)
) -> ResponseBase:
    if getattr(engine.registry, "closed", False):
        raise HTTPException(status_code=409, detail="Registry closed; provider cannot be restarted")
    if scheduler.is_running:
        return ResponseBase(success=True, message="Provider already listening", data=_status_payload(scheduler, engine))
    scheduler.start()
    log_business_event(
        event_type="provider_started",
        details={},
        request_id=getattr(request.state, "request_id", None)
    )
    return ResponseBase(success=True, message="Provider listening", data=_status_payload(scheduler, engine))


@router.post("/stop", response_model=ResponseBase, summary="Pause polling")
def stop_provider(
    request: Request,
    scheduler: PollScheduler = Depends(get_scheduler),
    engine: ReconciliationEngine = Depends(get_engine)
) -> ResponseBase:
    """Pause the scheduler. Jobs stay registered and resume on the next start."""
    if not scheduler.is_running:
        return ResponseBase(success=True, message="Provider not listening", data=_status_payload(scheduler, engine))
    scheduler.stop(close_registry=False)
    log_business_event(
        event_type="provider_stopped",
        details={},
        request_id=getattr(request.state, "request_id", None)
    )
    return ResponseBase(success=True, message="Provider stopped", data=_status_payload(scheduler, engine))


@router.get("/status", response_model=ResponseBase, summary="Provider status")
def provider_status(
    scheduler: PollScheduler = Depends(get_scheduler),
    engine: ReconciliationEngine = Depends(get_engine)
) -> ResponseBase:
    return ResponseBase(success=True, data=_status_payload(scheduler, engine))
