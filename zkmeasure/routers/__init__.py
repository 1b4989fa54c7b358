"""
HTTP routers for zkmeasure.

- health        : /healthz, /readyz, /version
- measurements  : /measurements, /status/{id}, /img/{id}

Metrics (/metrics) are mounted by ``zkmeasure.metrics.setup_metrics``.
"""

from __future__ import annotations

from .health import router as health_router
from .measurements import router as measurements_router

__all__ = ["health_router", "measurements_router"]
