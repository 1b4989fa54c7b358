from __future__ import annotations

"""
SQLite-backed measurement records (aiosqlite).

Every status change is one conditional UPDATE guarded by the set of states
the target may be entered from, so:

- concurrent status polls always read a complete row (old or new, never a mix);
- transitions only move forward; a stale or duplicate transition affects zero
  rows and is reported back as ``False``;
- ``attestation`` is written in the same statement that sets ``Completed`` and
  in no other.

Schema
------
CREATE TABLE IF NOT EXISTS measurements (
  id TEXT PRIMARY KEY,
  image_path TEXT NOT NULL,
  start_point TEXT NOT NULL,          -- JSON {x,y,z}
  end_point TEXT NOT NULL,            -- JSON {x,y,z}
  claimed_distance_mm INTEGER NOT NULL,
  status TEXT NOT NULL,               -- Pending | Processing | Completed | Failed
  attestation TEXT,                   -- JSON, set iff status = Completed
  error TEXT,                         -- server-side failure reason, never exposed
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
"""

import json
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from zkmeasure.models.measurement import (
    AttestationData,
    Measurement,
    MeasurementStatus,
    Point3D,
    predecessors,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS measurements (
  id TEXT PRIMARY KEY,
  image_path TEXT NOT NULL,
  start_point TEXT NOT NULL,
  end_point TEXT NOT NULL,
  claimed_distance_mm INTEGER NOT NULL,
  status TEXT NOT NULL,
  attestation TEXT,
  error TEXT,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS measurements_status ON measurements(status);
"""

_COLUMNS = (
    "id, image_path, start_point, end_point, claimed_distance_mm, "
    "status, attestation, error, created_at, updated_at"
)


def _now() -> int:
    return int(time.time())


def _canon_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


@dataclass(frozen=True)
class MeasurementRecord:
    id: str
    image_path: str
    start_point: Point3D
    end_point: Point3D
    claimed_distance_mm: int
    status: MeasurementStatus
    attestation: Optional[AttestationData]
    created_at: int
    updated_at: int
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row | aiosqlite.Row) -> "MeasurementRecord":
        att = row["attestation"]
        return cls(
            id=row["id"],
            image_path=row["image_path"],
            start_point=Point3D.model_validate_json(row["start_point"]),
            end_point=Point3D.model_validate_json(row["end_point"]),
            claimed_distance_mm=int(row["claimed_distance_mm"]),
            status=MeasurementStatus(row["status"]),
            attestation=AttestationData.model_validate_json(att) if att is not None else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=row["error"],
        )

    def to_view(self) -> Measurement:
        return Measurement(
            id=self.id,
            image_path=self.image_path,
            start_point=self.start_point,
            end_point=self.end_point,
            status=self.status,
            attestation=self.attestation,
        )


class MeasurementStore:
    """
    Owns one aiosqlite connection. Call ``await connect()`` on startup and
    ``await close()`` on shutdown.
    """

    def __init__(self, db_path: Path | str):
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        if self._conn:
            return
        if self._db_path != ":memory:":
            Path(self._db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        # Autocommit: each statement below is its own transaction.
        conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous=NORMAL;")
        await conn.executescript(SCHEMA)
        self._conn = conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("MeasurementStore is not connected")
        return self._conn

    async def ping(self) -> bool:
        async with self._db().execute("SELECT 1") as cur:
            row = await cur.fetchone()
        return bool(row and row[0] == 1)

    # --- Create / Read ---------------------------------------------------------

    async def insert(
        self,
        *,
        id: str,
        image_path: str,
        start_point: Point3D,
        end_point: Point3D,
        claimed_distance_mm: int,
    ) -> MeasurementRecord:
        """Create a record in ``Pending``."""
        now = _now()
        await self._db().execute(
            f"INSERT INTO measurements ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)",
            (
                id,
                image_path,
                _canon_json(start_point.model_dump()),
                _canon_json(end_point.model_dump()),
                int(claimed_distance_mm),
                MeasurementStatus.PENDING.value,
                now,
                now,
            ),
        )
        return MeasurementRecord(
            id=id,
            image_path=image_path,
            start_point=start_point,
            end_point=end_point,
            claimed_distance_mm=int(claimed_distance_mm),
            status=MeasurementStatus.PENDING,
            attestation=None,
            created_at=now,
            updated_at=now,
        )

    async def get(self, measurement_id: str) -> Optional[MeasurementRecord]:
        async with self._db().execute(
            f"SELECT {_COLUMNS} FROM measurements WHERE id = ?", (measurement_id,)
        ) as cur:
            row = await cur.fetchone()
        return MeasurementRecord.from_row(row) if row else None

    async def count_by_status(self) -> Dict[str, int]:
        out = {s.value: 0 for s in MeasurementStatus}
        async with self._db().execute("SELECT status, COUNT(*) FROM measurements GROUP BY status") as cur:
            async for status, n in cur:
                out[status] = int(n)
        return out

    # --- Transitions -----------------------------------------------------------

    async def transition(
        self,
        measurement_id: str,
        to: MeasurementStatus,
        *,
        attestation: Optional[AttestationData] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move a record to ``to`` if its current state allows it.

        Returns False when the row is missing or already past the allowed
        predecessors. ``attestation`` is required for ``Completed`` and
        rejected for every other target.
        """
        if (to is MeasurementStatus.COMPLETED) != (attestation is not None):
            raise ValueError("attestation is written together with Completed and never otherwise")
        allowed = sorted(s.value for s in predecessors(to))
        if not allowed:
            raise ValueError(f"{to.value} is not a transition target")

        att_json = _canon_json(attestation.model_dump(by_alias=True)) if attestation is not None else None
        placeholders = ",".join("?" for _ in allowed)
        cur = await self._db().execute(
            f"""
            UPDATE measurements
               SET status = ?, attestation = ?, error = ?, updated_at = ?
             WHERE id = ? AND status IN ({placeholders})
            """,
            (to.value, att_json, error, _now(), measurement_id, *allowed),
        )
        changed = cur.rowcount == 1
        await cur.close()
        return changed

    async def recover_orphans(self, reason: str = "interrupted by service restart") -> List[str]:
        """
        Fail every record still ``Pending``/``Processing``. Only called at
        startup, before any pipeline of this process exists.
        """
        open_states = (MeasurementStatus.PENDING.value, MeasurementStatus.PROCESSING.value)
        async with self._db().execute(
            "SELECT id FROM measurements WHERE status IN (?, ?)", open_states
        ) as cur:
            ids = [row["id"] for row in await cur.fetchall()]
        if ids:
            await self._db().execute(
                "UPDATE measurements SET status = ?, error = ?, updated_at = ? WHERE status IN (?, ?)",
                (MeasurementStatus.FAILED.value, reason, _now(), *open_states),
            )
        return ids


__all__ = ["MeasurementStore", "MeasurementRecord", "SCHEMA"]
