"""
Prometheus metrics for application monitoring.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from fastapi import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Reservation engine metrics
reservations_created_total = Counter(
    'reservations_created_total',
    'Total number of reservations committed by checkout',
    ['store_id']
)

checkout_failures_total = Counter(
    'checkout_failures_total',
    'Checkout attempts rejected, by error code',
    ['error_code']
)

checkout_duration_seconds = Histogram(
    'checkout_duration_seconds',
    'Time spent in the reservation transaction',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

product_lock_wait_seconds = Histogram(
    'product_lock_wait_seconds',
    'Time spent waiting for product locks',
    ['backend'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)

price_mismatches_total = Counter(
    'price_mismatches_total',
    'Client-submitted amounts that differ from server-computed amounts',
    ['field']
)

side_effect_failures_total = Counter(
    'side_effect_failures_total',
    'Post-commit side effects that failed',
    ['channel']
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            # Route template once routing ran, so per-store paths share one series
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or request.url.path
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """
    Get Prometheus metrics response.

    Args:
        openmetrics: If True, return OpenMetrics format, else Prometheus format
    """
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
