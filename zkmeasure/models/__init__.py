"""
zkmeasure.models
================

Pydantic models shared by the routers, the store and the pipeline.
"""

from __future__ import annotations

from .measurement import (
    AttestationData,
    Measurement,
    MeasurementCreated,
    MeasurementStatus,
    Point3D,
    can_transition,
    predecessors,
)

__all__ = [
    "AttestationData",
    "Measurement",
    "MeasurementCreated",
    "MeasurementStatus",
    "Point3D",
    "can_transition",
    "predecessors",
]
