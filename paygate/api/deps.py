"""
Dependencies for database sessions and access to the running engine.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from paygate.database import SessionLocal
from paygate.jobs.scheduler import PollScheduler
from paygate.services.reconciliation_engine import ReconciliationEngine
from paygate.integrations.event_log import EventLogPublisher
from paygate.utils import get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_engine(request: Request) -> ReconciliationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Reconciliation engine not available")
    return engine


def get_scheduler(request: Request) -> PollScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Poll scheduler not available")
    return scheduler


def get_event_log(request: Request) -> EventLogPublisher:
    """Event log shared by the feedback and result publishers."""
    event_log = getattr(request.app.state, "event_log", None)
    if event_log is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Event log not available")
    return event_log
