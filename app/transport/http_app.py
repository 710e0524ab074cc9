# app/transport/http_app.py
"""
HTTP application for the appraisal dispatch engine.

Security layers:
1. Public: /health and /ready (minimal information)
2. Protected: dispatch, SLA and admin endpoints (require admin token)
3. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.domain import Coordinates, JobStatus
from app.core.dispatch.engine import DispatchEngine, build_dispatch_engine
from app.core.dispatch.errors import DispatchError, StaleStateError
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import AsyncSchemaVersionCheck, HealthStatus, get_async_health_checker
from app.infra.logging_config import setup_logging, get_logger
from app.infra.metrics import get_metrics_collector
from app.infra.notification_channels import get_notification_facility
from app.infra.notification_queue import NotificationRetryQueue, get_notification_retry_queue
from app.infra.pg_dispatch_store_async import get_dispatch_store
from app.infra.sla_scheduler import SLASweepScheduler
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.schemas import (
    CoverageOut,
    DispatchOptionsIn,
    DispatchResultOut,
    DispatchStatsOut,
    ReassignIn,
    ReassignResultOut,
    SLAMetricsOut,
    SLAStatusOut,
    SweepResultOut,
)
from app.transport.security import (
    require_admin_auth,
    SecurityHeaders,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_engine(request: Request) -> DispatchEngine:
    """Get engine from app state"""
    return request.app.state.engine


def get_retry_queue(request: Request) -> NotificationRetryQueue:
    return request.app.state.retry_queue


async def _retry_once_on_stale(
    operation: Callable[[], Awaitable[T]],
    retry_if: Callable[[StaleStateError], bool] | None = None,
) -> T:
    """Run an engine call; a stale-state conflict is retried once on a fresh read.

    ``retry_if`` narrows which conflicts are retried; the rest surface as 409.
    """
    try:
        return await operation()
    except StaleStateError as exc:
        if retry_if is not None and not retry_if(exc):
            raise
        logger.info(f"Stale state, retrying once: {exc.detail}", extra={"job_id": exc.job_id})
        return await operation()


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    from app.transport.security import check_configured_tokens
    check_configured_tokens()

    # Validate schema version (does NOT run migrations)
    schema = await AsyncSchemaVersionCheck().check()
    if schema["status"] != HealthStatus.HEALTHY:
        logger.critical(
            f"Schema validation failed: {schema.get('details')}. "
            "Run migrations first: python -m app.infra.migrate"
        )
        raise RuntimeError("Database schema is not up to date")
    logger.info(f"Schema validated: {schema['current_version']}")

    facility = get_notification_facility()
    retry_queue = get_notification_retry_queue(facility)
    engine = build_dispatch_engine(get_dispatch_store(), facility, retry_queue)

    fastapi_app.state.engine = engine
    fastapi_app.state.retry_queue = retry_queue
    logger.info(f"Notification channels: {facility.describe()}")

    # Background loops only in "all" or "worker" mode so web replicas do not sweep twice
    scheduler: SLASweepScheduler | None = None
    if settings.run_mode in ("all", "worker"):
        await retry_queue.start()
        if settings.sla_sweep_enabled:
            scheduler = SLASweepScheduler(engine.check_slas, interval=settings.sla_sweep_interval_seconds)
            await scheduler.start()
        else:
            logger.info("SLA sweep skipped (sla_sweep_enabled=false)")
    else:
        logger.info(f"Background loops skipped (run_mode={settings.run_mode})")
    fastapi_app.state.sla_scheduler = scheduler

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if scheduler is not None:
        await scheduler.stop()
    await retry_queue.stop()

    from app.infra.http_client import close_all_sessions
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Appraisal Dispatch",
    description="Matches appraisal jobs to field appraisers and enforces job SLAs",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Map domain errors to their status codes"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", exc_info=True)
    else:
        logger.info(f"Dispatch request rejected: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "retryable": exc.retryable},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/health")
def health():
    """Liveness check. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness check: database reachable and schema current."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy"}
        )

    return {"status": "healthy"}


# ============================================================================
# PROTECTED ENDPOINTS
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_admin_auth)])
async def detailed_health():
    health_checker = get_async_health_checker()
    return await health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    """Operational counters and histograms."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@app.post("/jobs/{job_id}/dispatch", response_model=DispatchResultOut,
          dependencies=[Depends(require_admin_auth)])
async def dispatch_job(
    job_id: str,
    payload: DispatchOptionsIn | None = Body(default=None),
    engine: DispatchEngine = Depends(get_engine),
):
    """Notify every eligible appraiser that the job is available."""
    options = payload.to_options() if payload else None
    result = await _retry_once_on_stale(lambda: engine.dispatch(job_id, options))
    return DispatchResultOut.from_domain(result)


@app.post("/jobs/{job_id}/auto-assign", response_model=DispatchResultOut,
          dependencies=[Depends(require_admin_auth)])
async def auto_assign_job(
    job_id: str,
    payload: DispatchOptionsIn | None = Body(default=None),
    engine: DispatchEngine = Depends(get_engine),
):
    """Assign the dispatched job to its best-scoring candidate."""
    options = payload.to_options() if payload else None
    # Only a conflict before dispatch commits is re-run; the engine retries the assignment itself
    result = await _retry_once_on_stale(
        lambda: engine.auto_assign(job_id, options),
        retry_if=lambda exc: exc.expected_status == JobStatus.PENDING_DISPATCH.value,
    )
    return DispatchResultOut.from_domain(result)


@app.post("/jobs/{job_id}/reassign", response_model=ReassignResultOut,
          dependencies=[Depends(require_admin_auth)])
async def reassign_job(
    job_id: str,
    payload: ReassignIn,
    engine: DispatchEngine = Depends(get_engine),
):
    """Move the job to another appraiser, or back to the pool when new_appraiser_id is null."""
    result = await _retry_once_on_stale(
        lambda: engine.reassign(job_id, payload.new_appraiser_id, payload.reason)
    )
    return ReassignResultOut.from_domain(result)


@app.get("/jobs/{job_id}/sla", response_model=SLAStatusOut,
         dependencies=[Depends(require_admin_auth)])
async def job_sla_status(job_id: str, engine: DispatchEngine = Depends(get_engine)):
    return SLAStatusOut.from_domain(await engine.get_job_sla_status(job_id))


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/sla/check", response_model=SweepResultOut,
          dependencies=[Depends(require_admin_auth)])
async def admin_sla_check(engine: DispatchEngine = Depends(get_engine)):
    """Run one SLA sweep now."""
    return SweepResultOut.from_domain(await engine.check_slas())


@app.get("/admin/sla/metrics", response_model=SLAMetricsOut,
         dependencies=[Depends(require_admin_auth)])
async def admin_sla_metrics(
    days: int = Query(default=30, ge=1, le=365),
    engine: DispatchEngine = Depends(get_engine),
):
    end = datetime.now(timezone.utc)
    return SLAMetricsOut.from_domain(await engine.get_sla_metrics(end - timedelta(days=days), end))


@app.get("/admin/stats", response_model=DispatchStatsOut,
         dependencies=[Depends(require_admin_auth)])
async def admin_stats(engine: DispatchEngine = Depends(get_engine)):
    return DispatchStatsOut.from_domain(await engine.get_stats())


@app.get("/admin/coverage", response_model=CoverageOut,
         dependencies=[Depends(require_admin_auth)])
async def admin_coverage(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    radius_miles: float = Query(default=25.0, gt=0, le=500),
    engine: DispatchEngine = Depends(get_engine),
):
    """Verified appraisers whose home base lies within the radius of a point."""
    return CoverageOut.from_domain(await engine.get_coverage(Coordinates(lat, lng), radius_miles))


@app.get("/admin/notifications/queue", dependencies=[Depends(require_admin_auth)])
async def admin_notification_queue(queue: NotificationRetryQueue = Depends(get_retry_queue)):
    return queue.stats()


@app.post("/admin/notifications/queue/flush", dependencies=[Depends(require_admin_auth)])
async def admin_notification_queue_flush(queue: NotificationRetryQueue = Depends(get_retry_queue)):
    """Re-send due entries now instead of waiting for the next pass."""
    delivered = await queue.process()
    return {"delivered": delivered, **queue.stats()}


@app.post("/admin/metrics/reset", dependencies=[Depends(require_admin_auth)])
def admin_reset_metrics():
    get_metrics_collector().reset()
    logger.info("Metrics reset by admin")
    return {"status": "ok"}


@app.get("/", include_in_schema=False)
def root_public():
    return {"service": "appraisal-dispatch", "status": "ok"}
