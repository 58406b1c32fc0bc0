"""Prometheus metrics for the API and the worker processes."""

import time

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry()

http_requests_total = Counter(
    "atelier_http_requests_total",
    "HTTP requests handled",
    ["method", "route", "status"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "atelier_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "route"],
    registry=registry,
)

jobs_submitted_total = Counter(
    "atelier_jobs_submitted_total",
    "Jobs admitted to the queue",
    ["kind"],
    registry=registry,
)

admission_denied_total = Counter(
    "atelier_admission_denied_total",
    "Job submissions refused by admission control",
    ["reason"],
    registry=registry,
)

jobs_settled_total = Counter(
    "atelier_jobs_settled_total",
    "Job executions settled, by resulting state (queued means retried)",
    ["kind", "state"],
    registry=registry,
)

leases_expired_total = Counter(
    "atelier_leases_expired_total",
    "Active jobs reclaimed from workers that stopped renewing their lease",
    registry=registry,
)

usage_records_reported_total = Counter(
    "atelier_usage_records_reported_total",
    "Usage records reported to the billing system",
    ["event_type"],
    registry=registry,
)


class MetricsMiddleware:
    """ASGI middleware recording request counts and latency per route template."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                route = scope.get("route")
                path = getattr(route, "path", "unmatched")
                http_requests_total.labels(scope["method"], path, message["status"]).inc()
                http_request_duration_seconds.labels(scope["method"], path).observe(
                    time.perf_counter() - start
                )
            await send(message)

        await self.app(scope, receive, send_wrapper)


def setup_metrics(app: FastAPI) -> None:
    """Instrument the app and expose ``/metrics``."""
    app.add_middleware(MetricsMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
