from __future__ import annotations

"""
Measurement models

- Point3D: one AR-placed point, coordinates in millimetres.
- MeasurementStatus: pipeline state; forward-only (see ``can_transition``).
- AttestationData: the inclusion proof a downstream minting contract consumes.
- Measurement: the polling view returned by ``GET /status/{id}``.
- MeasurementCreated: response to ``POST /measurements``.

Wire names follow the mobile and web clients: ``attestationId``,
``merklePath``, ``leafCount`` and ``index`` inside ``attestation``;
snake_case everywhere else.
"""

import re
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class Point3D(BaseModel):
    x: float
    y: float
    z: float

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, frozen=True)

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


class MeasurementStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MeasurementStatus.COMPLETED, MeasurementStatus.FAILED)


# target -> states it may be entered from
_PREDECESSORS: Dict[MeasurementStatus, FrozenSet[MeasurementStatus]] = {
    MeasurementStatus.PENDING: frozenset(),
    MeasurementStatus.PROCESSING: frozenset({MeasurementStatus.PENDING}),
    MeasurementStatus.COMPLETED: frozenset({MeasurementStatus.PROCESSING}),
    MeasurementStatus.FAILED: frozenset({MeasurementStatus.PENDING, MeasurementStatus.PROCESSING}),
}


def predecessors(target: MeasurementStatus) -> FrozenSet[MeasurementStatus]:
    return _PREDECESSORS[target]


def can_transition(current: MeasurementStatus, target: MeasurementStatus) -> bool:
    return current in _PREDECESSORS[target]


class AttestationData(BaseModel):
    """
    Merkle inclusion of one proof in a published attestation.

    ``merkle_path`` holds 32-byte hashes as 0x-prefixed lowercase hex, ordered
    from the leaf upwards.
    """

    attestation_id: int = Field(..., ge=0, alias="attestationId")
    merkle_path: List[str] = Field(default_factory=list, alias="merklePath")
    leaf_count: int = Field(..., ge=1, alias="leafCount")
    leaf_index: int = Field(..., ge=0, alias="index")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("merkle_path", mode="before")
    @classmethod
    def _normalize_path(cls, v):
        if not isinstance(v, (list, tuple)):
            raise ValueError("merklePath must be a list of hashes")
        out = []
        for item in v:
            s = str(item).strip().lower()
            if not s.startswith("0x"):
                s = "0x" + s
            if not _HASH_RE.match(s):
                raise ValueError(f"merklePath element is not a 32-byte hex hash: {item!r}")
            out.append(s)
        return out

    @model_validator(mode="after")
    def _index_in_range(self) -> "AttestationData":
        if self.leaf_index >= self.leaf_count:
            raise ValueError("index must be smaller than leafCount")
        return self


class Measurement(BaseModel):
    """Polling view of one measurement. ``attestation`` is set iff Completed."""

    id: str
    image_path: str
    start_point: Point3D
    end_point: Point3D
    status: MeasurementStatus
    attestation: Optional[AttestationData] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _attestation_iff_completed(self) -> "Measurement":
        if (self.status is MeasurementStatus.COMPLETED) != (self.attestation is not None):
            raise ValueError("attestation must be present exactly when status is Completed")
        return self


class MeasurementCreated(BaseModel):
    measurement_id: str = Field(..., description="Handle for polling /status/{id}.")
    url: str = Field(..., description="Status URL for this measurement.")


__all__ = [
    "Point3D",
    "MeasurementStatus",
    "AttestationData",
    "Measurement",
    "MeasurementCreated",
    "can_transition",
    "predecessors",
]
