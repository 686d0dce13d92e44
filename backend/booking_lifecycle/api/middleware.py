"""
Per-request correlation and timing.

Every response carries X-Request-ID (the caller's, when supplied) and the
request's timing lands in the booking_http_request_seconds histogram keyed
by route template, so /bookings/bk_1 and /bookings/bk_2 share a series.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import observe_http_request

logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/health", "/metrics"})


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        started = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        idempotency_key = request.headers.get("Idempotency-Key")
        if idempotency_key:
            structlog.contextvars.bind_contextvars(idempotency_key=idempotency_key)

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            observe_http_request(request.method, _route_template(request), 500, elapsed)
            logger.exception("request_failed", duration_ms=round(elapsed * 1000, 2))
            raise

        elapsed = time.perf_counter() - started
        observe_http_request(request.method, _route_template(request), response.status_code, elapsed)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed * 1000:.2f}ms"

        if request.url.path not in QUIET_PATHS:
            log = logger.info
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            log("request_completed", status_code=response.status_code, duration_ms=round(elapsed * 1000, 2))
        return response
