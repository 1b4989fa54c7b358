from __future__ import annotations

"""
Background work for zkmeasure.

The only long-running work is the per-measurement pipeline run, supervised by
``MeasurementPipeline`` (see ``zkmeasure.tasks.pipeline``). The app lifespan
creates one pipeline per process and stops it on shutdown.
"""

from .pipeline import MeasurementPipeline

__all__ = ["MeasurementPipeline"]
