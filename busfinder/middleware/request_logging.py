"""
Access log for the HTTP boundary. Each request gets an id (taken from the
X-Request-ID header when the caller sends one) that is echoed back on the
response, so a chat transport can correlate its own logs with ours.
"""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from busfinder.monitoring.metrics import record_request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Upstream retries can make a query slow; flag anything above this.
SLOW_REQUEST_MS = 5000.0


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, slow_request_ms: float = SLOW_REQUEST_MS):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        record_request(response.status_code)
        level = logging.WARNING if elapsed_ms >= self.slow_request_ms else logging.INFO
        logger.log(
            level,
            "request id=%s %s %s -> %s in %.1fms client=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            _client_ip(request),
            extra={"request_id": request_id, "duration_ms": round(elapsed_ms, 1)},
        )
        return response
