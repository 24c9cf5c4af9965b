"""Evaluation outcome events and Prometheus metrics.

Every evaluation emits exactly one success or error event for the stats
collector. Sinks are fire-and-forget: `emit_outcome` swallows and logs sink
failures so they never fail an evaluation.

Metrics use low-cardinality labels only. The scope of each event goes to the
debug log rather than into label values.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from .models import Scope

logger = logging.getLogger("flags_gateway.stats")


class StatsSink(Protocol):
    def record_success(self, scope: Scope) -> None:
        ...

    def record_error(self, scope: Scope) -> None:
        ...


class NullStatsSink:
    def record_success(self, scope: Scope) -> None:
        return None

    def record_error(self, scope: Scope) -> None:
        return None


class PrometheusStatsSink:
    """Counts agent evaluation outcomes."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.evaluations = Counter(
            "flags_agent_evaluations_total",
            "Agent flag evaluations by outcome",
            ["outcome"],
            registry=self.registry,
        )

    def record_success(self, scope: Scope) -> None:
        self.evaluations.labels(outcome="success").inc()
        logger.debug("evaluation success project=%s agent=%s env=%s", scope.project_id, scope.agent_id, scope.environment_id)

    def record_error(self, scope: Scope) -> None:
        self.evaluations.labels(outcome="error").inc()
        logger.debug("evaluation error project=%s agent=%s env=%s", scope.project_id, scope.agent_id, scope.environment_id)


def emit_outcome(sink: StatsSink, scope: Scope, success: bool) -> None:
    try:
        if success:
            sink.record_success(scope)
        else:
            sink.record_error(scope)
    except Exception as e:
        logger.warning("stats sink failed: %s: %s", type(e).__name__, e)


def instrument_fastapi(app, registry: CollectorRegistry, authorize: Optional[Callable] = None) -> None:
    """Attach request metrics middleware and GET /metrics to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    requests_total = Counter(
        "flags_http_requests_total",
        "Total HTTP requests received",
        ["method", "route", "status"],
        registry=registry,
    )
    latency = Histogram(
        "flags_http_request_latency_seconds",
        "HTTP request latency in seconds",
        ["method", "route"],
        buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
        registry=registry,
    )

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.monotonic()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            try:
                route = request.scope.get("route")
                route_path = getattr(route, "path", None) or request.url.path
                requests_total.labels(method=request.method, route=route_path, status=str(status)).inc()
                latency.labels(method=request.method, route=route_path).observe(time.monotonic() - start)
            except Exception:
                # metrics must never break the app
                logger.debug("failed to record request metrics", exc_info=True)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return PlainTextResponse("FORBIDDEN", status_code=403)
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
