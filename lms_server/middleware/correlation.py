"""
Correlation ID middleware for request tracing.

Accepts X-Correlation-ID from the caller or generates a UUID4, stores it in the
logger's context variable so queue and Supabase log lines emitted while serving
the request carry it, and echoes it back in the response headers.
"""
import uuid
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from lms_server.utils.logger import correlation_id_var, get_logger

logger = get_logger("http")

# Health probes would otherwise drown the log
QUIET_PATHS = frozenset({"/api/health"})


def get_correlation_id() -> str:
    """Get the current request's correlation ID"""
    return correlation_id_var.get("")


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        token = correlation_id_var.set(cid)

        start = time.monotonic()
        method = request.method
        path = request.url.path

        try:
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "request.failed",
                    extra={
                        "method": method,
                        "path": path,
                        "duration_ms": round((time.monotonic() - start) * 1000),
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                raise

            status = response.status_code
            if path not in QUIET_PATHS or status >= 400:
                log_fn = logger.warning if status >= 400 else logger.info
                log_fn(
                    "request.completed",
                    extra={
                        "method": method,
                        "path": path,
                        "status": status,
                        "duration_ms": round((time.monotonic() - start) * 1000),
                        "client_ip": request.client.host if request.client else "",
                    },
                )

            response.headers["X-Correlation-ID"] = cid
            return response
        finally:
            correlation_id_var.reset(token)
