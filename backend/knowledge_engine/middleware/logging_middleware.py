"""HTTP access logging and request metrics."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from fastapi import Request
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from ..logging_utils import bind_request_context, bind_tenant_context, clear_context

REQUEST_ID_HEADER = "x-request-id"
TENANT_HEADER = "x-tenant-id"

HTTP_REQUESTS = Counter(
    "knowledge_http_requests_total",
    "HTTP requests by route and status",
    ["method", "path", "status_code"],
)
HTTP_LATENCY = Histogram(
    "knowledge_http_request_duration_seconds",
    "HTTP request latency by route",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
)
HTTP_IN_FLIGHT = Gauge(
    "knowledge_http_requests_in_flight",
    "HTTP requests currently being served",
)


def route_template(request: Request) -> str:
    """The matched route path (``/knowledge/{vertical}/search``), else the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request and tenant ids for the lifetime of a request.

    The request id comes from ``x-request-id`` when the caller sends one and
    is echoed on the response. ``x-tenant-id`` is optional here; routes that
    take a tenant in the body bind it themselves.
    """

    def __init__(self, app: ASGIApp, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.logger = logger or logging.getLogger("knowledge_engine.http")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        clear_context()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        bind_request_context(request_id)
        bind_tenant_context(request.headers.get(TENANT_HEADER))

        status_code = 500
        started = time.perf_counter()
        HTTP_IN_FLIGHT.inc()
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except Exception:
            self.logger.exception("Unhandled error while serving request")
            raise
        finally:
            HTTP_IN_FLIGHT.dec()
            self._finish(request, status_code, time.perf_counter() - started)
            clear_context()

    def _finish(self, request: Request, status_code: int, elapsed: float) -> None:
        path = route_template(request)
        HTTP_REQUESTS.labels(method=request.method, path=path, status_code=str(status_code)).inc()
        HTTP_LATENCY.labels(method=request.method, path=path).observe(elapsed)
        level = logging.WARNING if status_code >= 500 else logging.INFO
        self.logger.log(
            level,
            "%s %s -> %d",
            request.method,
            path,
            status_code,
            extra={"status_code": status_code, "duration_ms": round(elapsed * 1000, 2)},
        )
