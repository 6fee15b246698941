"""Prometheus metrics for the gate.

Labels stay low-cardinality: outcomes and results only, never tool
parameters or nonces.

Env:
- GA_METRICS_ENABLED (default: 1) controls the /metrics endpoint.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

DECISIONS_TOTAL = Counter(
    "ga_decisions_total",
    "Total gate decisions",
    ["outcome"],
)
APPROVALS_TOTAL = Counter(
    "ga_approvals_total",
    "Total approval attempts",
    ["result"],
)
STORE_ERRORS_TOTAL = Counter(
    "ga_store_errors_total",
    "Escalation store failures",
    ["operation"],
)
HTTP_REQUESTS_TOTAL = Counter(
    "ga_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "ga_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def record_decision(outcome: str) -> None:
    DECISIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_approval(result: str) -> None:
    APPROVALS_TOTAL.labels(result=str(result)).inc()


def record_store_error(operation: str) -> None:
    STORE_ERRORS_TOTAL.labels(operation=str(operation)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics and request-metrics middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("GA_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
