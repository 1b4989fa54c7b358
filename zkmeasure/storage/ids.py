"""
Measurement identifiers.

Ids are random UUID4 strings in canonical lowercase form. They double as the
artifact directory name, so anything that is not a canonical UUID4 is
rejected before it can reach a filesystem path.
"""

from __future__ import annotations

import re
import uuid

_UUID4_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")


class InvalidMeasurementId(ValueError):
    """Identifier is not a canonical UUID4 string."""


def new_measurement_id() -> str:
    return str(uuid.uuid4())


def is_valid_id(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID4_RE.match(value))


def require_valid_id(value: object) -> str:
    if not is_valid_id(value):
        raise InvalidMeasurementId(f"invalid measurement id: {value!r}")
    return value  # type: ignore[return-value]


__all__ = ["InvalidMeasurementId", "new_measurement_id", "is_valid_id", "require_valid_id"]
