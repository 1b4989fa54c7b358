"""
zkmeasure.storage
=================

Persistence for measurements.

- fs.py     : per-measurement artifact directories (image, circuit input,
              witness, proof, public signals, attestation record); write-once
- sqlite.py : measurement records and their forward-only status transitions
- ids.py    : UUID4 identifiers shared by both
"""

from __future__ import annotations

from .fs import ArtifactNotFound, ArtifactStore
from .ids import InvalidMeasurementId, is_valid_id, new_measurement_id, require_valid_id
from .sqlite import MeasurementRecord, MeasurementStore

__all__ = [
    "ArtifactStore",
    "ArtifactNotFound",
    "MeasurementStore",
    "MeasurementRecord",
    "InvalidMeasurementId",
    "new_measurement_id",
    "is_valid_id",
    "require_valid_id",
]
