"""HTTP request metrics and per-request log context."""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from repotrack_api.observability.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL

# Paths not worth timing
_SKIPPED_PATHS = frozenset({"/metrics"})


def _endpoint_label(request: Request) -> str:
    # Route template, never the raw path, so project ids don't become labels
    path = getattr(request.scope.get("route"), "path", None)
    return path if isinstance(path, str) else "unmatched"


def _observe(request: Request, status_code: int, elapsed: float) -> None:
    labels = (request.method, _endpoint_label(request), str(status_code))
    HTTP_REQUEST_DURATION.labels(*labels).observe(elapsed)
    HTTP_REQUESTS_TOTAL.labels(*labels).inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Time every request and tag its log lines with method, path and request id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _SKIPPED_PATHS:
            return await call_next(request)

        context = {"method": request.method, "path": request.url.path}
        if request_id := request.headers.get("X-Request-ID"):
            context["request_id"] = request_id

        started = time.monotonic()
        status_code = 500
        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                _observe(request, status_code, time.monotonic() - started)
