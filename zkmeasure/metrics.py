from __future__ import annotations

"""
Prometheus metrics setup and /metrics exporter for zkmeasure.

Features
--------
- Low-overhead ASGI middleware that records:
    - http_requests_total{method,path,status}
    - http_request_duration_seconds histogram
    - http_inprogress_requests gauge
- Pipeline metrics:
    - measurements_submitted_total
    - measurement_pipeline_outcomes_total{status}
    - measurement_pipeline_stage_seconds{stage}  (witness, prove, attest)
    - measurement_pipeline_inflight
- FastAPI router mounted at /metrics (configurable).
- Service metadata metric (service_info).

Usage
-----
    from zkmeasure.metrics import setup_metrics

    metrics = setup_metrics(app, service_version="0.1.0")
    metrics.observe_stage("prove", 12.3)

Env
---
- PROMETHEUS_MULTIPROC_DIR: if set, use the multiprocess collector.
- METRICS_PATH: override default /metrics path (optional).
"""

import os
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
    multiprocess,
)
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

_HTTP_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
# Proving and attestation take seconds to many minutes.
_STAGE_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0)


class Metrics:
    """
    Holder for registry and metric objects. Exposed via app.state.metrics and
    handed to the pipeline.
    """

    def __init__(self, service_name: str = "zkmeasure", service_version: Optional[str] = None) -> None:
        self.multiproc_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
        self.registry = CollectorRegistry()

        if self.multiproc_dir:
            multiprocess.MultiProcessCollector(self.registry)
        else:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)

        gauge_kwargs: Dict[str, Any] = {"registry": self.registry}
        if self.multiproc_dir:
            gauge_kwargs["multiprocess_mode"] = "livesum"

        # HTTP
        self.http_inprogress = Gauge(
            "http_inprogress_requests",
            "In-progress HTTP requests",
            ["method", "path"],
            **gauge_kwargs,
        )
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "path", "status"],
            buckets=_HTTP_BUCKETS,
            registry=self.registry,
        )

        # Pipeline
        self.measurements_submitted = Counter(
            "measurements_submitted_total",
            "Measurements accepted by POST /measurements",
            registry=self.registry,
        )
        self.pipeline_outcomes = Counter(
            "measurement_pipeline_outcomes_total",
            "Pipeline runs by terminal status",
            ["status"],
            registry=self.registry,
        )
        self.pipeline_stage_seconds = Histogram(
            "measurement_pipeline_stage_seconds",
            "Duration of pipeline stages in seconds",
            ["stage"],
            buckets=_STAGE_BUCKETS,
            registry=self.registry,
        )
        self.pipeline_inflight = Gauge(
            "measurement_pipeline_inflight",
            "Pipeline runs currently executing",
            **gauge_kwargs,
        )

        if not self.multiproc_dir:
            self.service_info = Info("service", "Service metadata", registry=self.registry)
            payload = {"name": service_name}
            if service_version:
                payload["version"] = service_version
            self.service_info.info(payload)

    def observe_stage(self, stage: str, seconds: float) -> None:
        self.pipeline_stage_seconds.labels(stage).observe(seconds)

    def record_outcome(self, status: str) -> None:
        self.pipeline_outcomes.labels(status).inc()

    def render_latest(self) -> bytes:
        return generate_latest(self.registry)


# ------------------------------ Middleware -----------------------------------


def _extract_path_template(scope: Scope) -> str:
    """Low-cardinality route template (``/status/{measurement_id}``), else the raw path."""
    route = scope.get("route")
    val = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(val, str) and val:
        return val
    return scope.get("path") or "unknown"


class PrometheusMiddleware:
    def __init__(self, app: ASGIApp, metrics: Metrics):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET")
        start = time.perf_counter()
        status_code = 500

        async def send_wrapped(message: Dict[str, Any]) -> None:
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
            await send(message)

        # route template is unknown until routing runs
        raw_path = scope.get("path", "unknown")
        self.metrics.http_inprogress.labels(method, raw_path).inc()
        try:
            await self.app(scope, receive, send_wrapped)
        finally:
            duration = time.perf_counter() - start
            labels = (method, _extract_path_template(scope), str(status_code))
            try:
                self.metrics.http_requests_total.labels(*labels).inc()
                self.metrics.http_request_duration_seconds.labels(*labels).observe(duration)
            finally:
                self.metrics.http_inprogress.labels(method, raw_path).dec()


# ------------------------------ Router ---------------------------------------


def create_metrics_router(metrics: Metrics, path: str = "/metrics") -> APIRouter:
    router = APIRouter()

    @router.get(path, include_in_schema=False)
    async def metrics_endpoint() -> Response:
        return Response(content=metrics.render_latest(), media_type=CONTENT_TYPE_LATEST)

    return router


def setup_metrics(
    app: FastAPI,
    *,
    service_name: str = "zkmeasure",
    service_version: Optional[str] = None,
    path: Optional[str] = None,
) -> Metrics:
    """
    Create the registry, add the HTTP middleware and mount /metrics.

    Returns the `Metrics` instance and stores it in `app.state.metrics`.
    """
    metrics = Metrics(service_name=service_name, service_version=service_version)
    app.add_middleware(PrometheusMiddleware, metrics=metrics)
    app.include_router(create_metrics_router(metrics, path or os.getenv("METRICS_PATH") or "/metrics"))
    app.state.metrics = metrics
    return metrics


__all__ = ["Metrics", "PrometheusMiddleware", "create_metrics_router", "setup_metrics"]
