"""
Measurement service: what the HTTP routes do, minus HTTP.

- create_measurement(...)   validate -> allocate -> store image -> insert Pending -> schedule
- get_measurement(...)      pure read of the polling view
- get_image(...)            stored image bytes

Validation happens before anything is written, so a malformed request never
leaves a record or an artifact directory behind.
"""

from __future__ import annotations

import json
import re
import sqlite3
from typing import Any, Optional

from pydantic import ValidationError

from zkmeasure.errors import BadRequest, NotFound, PayloadTooLarge, ServerError, StorageError
from zkmeasure.logging import get_logger
from zkmeasure.metrics import Metrics
from zkmeasure.models.measurement import Measurement, MeasurementStatus, Point3D
from zkmeasure.services.proof import claimed_distance_for
from zkmeasure.storage import fs as slots
from zkmeasure.storage.fs import ArtifactNotFound, ArtifactStore
from zkmeasure.storage.ids import is_valid_id, new_measurement_id
from zkmeasure.storage.sqlite import MeasurementRecord, MeasurementStore
from zkmeasure.tasks.pipeline import MeasurementPipeline

log = get_logger(__name__)

_DIGITS_RE = re.compile(r"^[0-9]+$")
# largest value an SQLite INTEGER column holds
_MAX_DISTANCE_MM = 2**63 - 1


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def parse_point(field: str, raw: Optional[str]) -> Point3D:
    """Parse a ``{"x","y","z"}`` JSON object of numbers into a point."""
    if raw is None or not raw.strip():
        raise BadRequest(f"missing field {field!r}")
    try:
        obj = json.loads(raw)
    except ValueError as e:
        raise BadRequest(f"{field} is not valid JSON", details={"field": field, "error": str(e)}) from e
    if not isinstance(obj, dict):
        raise BadRequest(f"{field} must be a JSON object with x, y and z", details={"field": field})
    missing = [k for k in ("x", "y", "z") if k not in obj]
    if missing:
        raise BadRequest(f"{field} is missing {', '.join(missing)}", details={"field": field})
    if not all(_is_number(obj[k]) for k in ("x", "y", "z")):
        raise BadRequest(f"{field} coordinates must be numbers", details={"field": field})
    try:
        return Point3D(x=obj["x"], y=obj["y"], z=obj["z"])
    except ValidationError as e:
        raise BadRequest(f"{field} coordinates must be finite numbers", details={"field": field}) from e


def parse_claimed_distance(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    s = raw.strip()
    if not _DIGITS_RE.match(s):
        raise BadRequest("claimedDistance must be a non-negative integer (millimetres)")
    return int(s)


def check_image(data: Optional[bytes], *, max_bytes: int) -> bytes:
    if not data:
        raise BadRequest("image must be a non-empty file")
    if len(data) > max_bytes:
        raise PayloadTooLarge(max_bytes)
    return data


async def create_measurement(
    *,
    store: MeasurementStore,
    artifacts: ArtifactStore,
    pipeline: MeasurementPipeline,
    image: bytes,
    start_point: Point3D,
    end_point: Point3D,
    claimed_distance_mm: Optional[int] = None,
    metrics: Optional[Metrics] = None,
) -> MeasurementRecord:
    """Persist a new ``Pending`` measurement and schedule its single pipeline run."""
    if not pipeline.accepting:
        raise ServerError("service is shutting down")

    claimed = claimed_distance_mm if claimed_distance_mm is not None else claimed_distance_for(start_point, end_point)
    if claimed > _MAX_DISTANCE_MM:
        raise BadRequest("distance is out of range")
    mid = new_measurement_id()
    try:
        artifacts.allocate(mid)
    except StorageError as e:
        log.error("measurement.storage_failed", measurement_id=mid, error=e.describe())
        raise ServerError("could not store the measurement image") from e

    try:
        artifacts.write_image(mid, image)
        record = await store.insert(
            id=mid,
            image_path=artifacts.relative_path(mid, slots.IMAGE),
            start_point=start_point,
            end_point=end_point,
            claimed_distance_mm=claimed,
        )
    except (StorageError, sqlite3.Error) as e:
        log.error("measurement.storage_failed", measurement_id=mid, error=f"{type(e).__name__}: {e}")
        artifacts.discard(mid)
        raise ServerError("could not store the measurement") from e

    try:
        pipeline.schedule(record)
    except RuntimeError as e:
        # shutdown began while the record was being written
        log.warning("measurement.not_scheduled", measurement_id=mid, reason=str(e))
        await store.transition(mid, MeasurementStatus.FAILED, error=f"not scheduled: {e}")
        raise ServerError("service is shutting down") from e
    if metrics is not None:
        metrics.measurements_submitted.inc()
    log.info("measurement.created", measurement_id=mid, image_bytes=len(image), claimed_distance_mm=claimed)
    return record


async def get_measurement(store: MeasurementStore, measurement_id: str) -> Measurement:
    if not is_valid_id(measurement_id):
        raise NotFound("Measurement")
    record = await store.get(measurement_id)
    if record is None:
        raise NotFound("Measurement")
    return record.to_view()


async def get_image(store: MeasurementStore, artifacts: ArtifactStore, measurement_id: str) -> bytes:
    if not is_valid_id(measurement_id) or await store.get(measurement_id) is None:
        raise NotFound("Image")
    try:
        return artifacts.read_image(measurement_id)
    except ArtifactNotFound as e:
        raise NotFound("Image") from e


__all__ = [
    "parse_point",
    "parse_claimed_distance",
    "check_image",
    "create_measurement",
    "get_measurement",
    "get_image",
]
