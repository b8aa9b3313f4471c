"""
Request middleware: request id, timing and one access log line per request.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ticketqueue.core.logging import get_logger

logger = get_logger(__name__)

# Polled by load balancers and Prometheus; not worth an access log line
UNLOGGED_PATHS = frozenset({"/health", "/metrics"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds `request_id` (the caller's X-Request-ID when given) and the
    anonymous queue identity (X-Session-ID) to the log context, and echoes
    the id and elapsed time back as response headers.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        started = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        if request.headers.get("X-Session-ID"):
            context["queue_session"] = request.headers["X-Session-ID"]
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", error=str(e), duration_ms=_elapsed_ms(started))
            raise

        elapsed = _elapsed_ms(started)
        if request.url.path not in UNLOGGED_PATHS:
            route = request.scope.get("route")
            log = logger.warning if response.status_code >= 500 else logger.info
            log(
                "request_completed",
                route=getattr(route, "path", None),
                status_code=response.status_code,
                duration_ms=elapsed,
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed}ms"
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
