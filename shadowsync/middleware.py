"""
Request context and Prometheus middleware.
"""
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import structlog
from .metrics import Metrics

CORRELATION_HEADER = "x-correlation-id"

log = structlog.get_logger()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with a correlation id.

    The id is taken from ``X-Correlation-ID`` or generated, stored on
    ``request.state`` for error bodies, bound to the structlog context and
    echoed in the response headers.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Counts and times HTTP requests.

    Paths are labelled by route template (``/v1/events/{event_id}``) so
    per-event URLs do not explode label cardinality. The metrics endpoint
    itself is not measured.
    """

    def __init__(self, app, metrics: Metrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        self.metrics.http_requests_active.inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            duration = self._observe(request, 500, started)
            log.error(
                "http.request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration * 1000, 2),
            )
            raise
        finally:
            self.metrics.http_requests_active.dec()

        duration = self._observe(request, response.status_code, started)
        log.info(
            "http.request",
            route=_route_path(request),
            http_status=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        return response

    def _observe(self, request: Request, status: int, started: float) -> float:
        duration = time.perf_counter() - started
        labels = {
            "service": self.metrics.service_name,
            "method": request.method,
            "path": _route_path(request),
        }
        self.metrics.http_requests_total.labels(status=status, **labels).inc()
        self.metrics.http_request_duration.labels(**labels).observe(duration)
        return duration


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
