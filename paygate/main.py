"""
FastAPI application main module.
Wires the job registry, payment collaborators, reconciliation engine and poll
scheduler, and exposes the HTTP intake surface with request tracing and rate limits.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
from paygate.api.v1 import api_router
from paygate.utils import setup_logging, get_logger
from paygate.utils.observability import ensure_request_id, REQUEST_ID_HEADER
from paygate.utils.ratelimiter import rate_limiter
from paygate.config import EngineSettings, RATE_LIMIT_SETTINGS, REGISTRY_SETTINGS
from paygate.database import engine as db_engine
from paygate.database import Base
from paygate.integrations.event_log import EventLogPublisher
from paygate.integrations.mock_wallet import MockLightningWallet
from paygate.integrations.ollama import create_executor
from paygate.jobs.redis_registry import create_registry
from paygate.jobs.scheduler import PollScheduler
from paygate.services.job_history import JobHistoryRecorder
from paygate.services.reconciliation_engine import ReconciliationEngine

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/paygate.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "paygate-reconciliation"
SERVICE_VERSION = "1.0.0"


def build_engine(registry=None, settings: EngineSettings | None = None) -> tuple[ReconciliationEngine, EventLogPublisher]:
    """Assemble the engine with the configured collaborators."""
    wallet = MockLightningWallet()
    event_log = EventLogPublisher()
    reconciliation_engine = ReconciliationEngine(
        registry if registry is not None else create_registry(),
        invoice_issuer=wallet,
        status_checker=wallet,
        executor=create_executor(),
        feedback=event_log,
        results=event_log,
        settings=settings or EngineSettings.from_config(),
        history=JobHistoryRecorder(),
    )
    return reconciliation_engine, event_log


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")
    scheduler: PollScheduler | None = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=db_engine)

        reconciliation_engine, event_log = build_engine()
        scheduler = PollScheduler(reconciliation_engine)
        app.state.engine = reconciliation_engine  # type: ignore[attr-defined]
        app.state.event_log = event_log  # type: ignore[attr-defined]
        app.state.scheduler = scheduler  # type: ignore[attr-defined]

        if os.getenv("PROVIDER_AUTOSTART", "true").strip().lower() in {"1", "true", "yes", "on"}:
            scheduler.start()
        else:
            logger.info("Provider autostart disabled; use POST /api/v1/provider/start")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler is not None:
            # Closes the registry: in-flight polls finish without writing.
            scheduler.stop(close_registry=True)
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Payment-Gated Job Reconciliation",
    description="""
    Accepts compute jobs, bills each through a payment invoice and reconciles
    payment status with execution.

    ## Flow
    * **Submit** a job and receive a payment request
    * **Poll** runs in the background with exponential backoff per job
    * **Optimistic processing** starts work after repeated unconfirmed checks
    * **History** keeps every finished job with its outcome

    ## Rate Limiting
    Per-client fixed windows. Standard headers:
    `X-RateLimit-Limit`, `X-RateLimit-Remaining`, `X-RateLimit-Reset`.
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Apply per-client rate limits with endpoint categorization.

    Categories mapping (prefix-based):
      POST /api/v1/jobs -> job_submit
      GET  /api/v1/jobs, /api/v1/history -> job_query
    Fallback: default
    """
    path = request.url.path
    method = request.method.upper()
    category = "default"
    if path.startswith("/api/v1/jobs") and method == "POST":
        category = "job_submit"
    elif path.startswith("/api/v1/jobs") or path.startswith("/api/v1/history"):
        category = "job_query"

    settings = RATE_LIMIT_SETTINGS.get(category, RATE_LIMIT_SETTINGS["default"])
    limit = int(settings.get("limit", 1000))
    window_seconds = int(settings.get("window_seconds", 3600))

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        client_key = f"token:{auth_header[7:]}"
    else:
        client_key = f"addr:{request.client.host if request.client else 'unknown'}"

    allowed, meta = await rate_limiter.check_and_increment(client_key, category, limit, window_seconds)

    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content={
                "success": False,
                "message": f"Rate limit exceeded for category '{category}'",
                "category": category,
            },
        )
        resp.headers["X-RateLimit-Limit"] = str(meta["limit"])
        resp.headers["X-RateLimit-Remaining"] = "0"
        resp.headers["X-RateLimit-Reset"] = str(meta["reset_epoch"])
        return resp

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(meta["limit"])
    response.headers["X-RateLimit-Remaining"] = str(meta["remaining"])
    response.headers["X-RateLimit-Reset"] = str(meta["reset_epoch"])
    return response


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)
    process_time = time.time() - request.state.start_time

    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )
    return response


def _jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold the raised ValueError itself
    return [{k: v for k, v in err.items() if k in {"loc", "msg", "type"}} for err in exc.errors()]


def _error_response(request: Request, status_code: int, message, **extra) -> JSONResponse:
    body = {"success": False, "message": message, **extra}
    body["request_id"] = getattr(request.state, "request_id", "unknown")
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed job submissions and query parameters."""
    errors = _jsonable_errors(exc)
    logger.warning(
        "Request validation failed",
        errors=errors,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
    )
    return _error_response(request, 422, "Request validation failed", details=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    level = logger.warning if exc.status_code >= 500 else logger.info
    level(
        "HTTP error response",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything the endpoints did not map; details stay in the log."""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, "request_id", None),
        method=request.method,
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "registry_backend": "redis" if REGISTRY_SETTINGS.get("use_redis") else "memory",
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database, registry and scheduler status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        from paygate.database import SessionLocal
        from sqlalchemy import text
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    reconciliation_engine = getattr(app.state, "engine", None)
    if reconciliation_engine is not None:
        registry = reconciliation_engine.registry
        snap = registry.snapshot()
        health_status["checks"]["registry"] = {
            k: v for k, v in snap.items() if k in {"backend", "active", "awaiting_payment", "optimistically_processing", "closed"}
        }
        if hasattr(registry, "health_check") and not registry.health_check():
            health_status["checks"]["redis"] = "unavailable"
            health_status["status"] = "degraded"
        if snap.get("closed"):
            health_status["status"] = "degraded"

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        health_status["checks"]["scheduler"] = scheduler.snapshot()

    return health_status


@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Payment-Gated Job Reconciliation API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")
    uvicorn.run(
        "paygate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["paygate"],
        log_level="info",
        access_log=True
    )
