# app/transport/middleware.py
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

# /jobs/{job_id}/<action>
_JOB_PATH = re.compile(r"^/jobs/([^/]+)/")

# Requests slower than this are logged at WARNING
SLOW_REQUEST_MS = 2000.0


def _job_id_from_path(path: str) -> str | None:
    match = _JOB_PATH.match(path)
    return match.group(1) if match else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach X-Request-ID (client supplied or generated) to request state and response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one counter per request, tagged with the job when the path names one"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        context = {"request_id": getattr(request.state, "request_id", "unknown")}
        job_id = _job_id_from_path(request.url.path)
        if job_id:
            context["job_id"] = job_id
        log_ctx = LogContext(logger, **context)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_ctx.error(
                f"{request.method} {request.url.path} failed: {exc.__class__.__name__} "
                f"after {duration_ms:.0f}ms",
                extra={"method": request.method, "path": request.url.path, "error_type": exc.__class__.__name__},
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        extra = {
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        }
        message = f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)"
        if duration_ms > SLOW_REQUEST_MS:
            log_ctx.warning(f"Slow request: {message}", extra=extra)
        else:
            log_ctx.info(message, extra=extra)

        inc_counter("http_requests_total", method=request.method, status=str(response.status_code))
        observe_histogram("http_request_duration_ms", duration_ms, method=request.method)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort 500 with the request ID, so operators can find the traceback"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id, "job_id": _job_id_from_path(request.url.path)},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
