"""
Filesystem-backed artifact store (write-once, partitioned by measurement id).

Layout:
    <STORAGE_DIR>/measurements/<id>/image.jpg
    <STORAGE_DIR>/measurements/<id>/input.json
    <STORAGE_DIR>/measurements/<id>/witness.wtns
    <STORAGE_DIR>/measurements/<id>/proof.json
    <STORAGE_DIR>/measurements/<id>/public.json
    <STORAGE_DIR>/measurements/<id>/attestation.json
    <STORAGE_DIR>/measurements/<id>/.work/          (toolchain scratch space)

- Atomic writes via temp files + os.replace; a slot that already exists is
  never overwritten.
- Slot names are restricted to the allowlist above and ids must be canonical
  UUID4 strings, so two measurements never share a path.

Public API:
  - allocate(id) -> Path
  - write_image(id, data) -> Path / read_image(id) -> bytes
  - write_artifact(id, slot, data) -> Path / read_artifact(id, slot) -> bytes
  - adopt_artifact(id, slot, src) -> Path   (move a toolchain output into place)
  - scratch_dir(id) -> Path
  - discard(id)     (remove a directory whose record was never written)
  - exists(id, slot) -> bool / relative_path(id, slot) -> str
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from zkmeasure.errors import StorageError
from zkmeasure.storage.ids import require_valid_id

MEASUREMENTS_DIR = "measurements"
SCRATCH_DIR = ".work"

IMAGE = "image.jpg"
INPUT = "input.json"
WITNESS = "witness.wtns"
PROOF = "proof.json"
PUBLIC = "public.json"
ATTESTATION = "attestation.json"

SLOTS = frozenset({IMAGE, INPUT, WITNESS, PROOF, PUBLIC, ATTESTATION})


class ArtifactNotFound(FileNotFoundError):
    """Requested artifact is not present on disk."""


def _canon_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@contextmanager
def _temp_under(directory: Path) -> Iterator[Path]:
    with tempfile.NamedTemporaryFile("wb", delete=False, dir=directory, prefix=".tmp-") as tf:
        tmp_path = Path(tf.name)
    try:
        yield tmp_path
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _finalize_write(tmp: Path, final_path: Path) -> None:
    os.replace(tmp, final_path)
    os.chmod(final_path, 0o644)


class ArtifactStore:
    def __init__(self, root: Path | str):
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_root(self) -> None:
        try:
            (self._root / MEASUREMENTS_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"cannot create storage root {self._root}") from e

    # -- layout --------------------------------------------------------------

    def directory(self, measurement_id: str) -> Path:
        return self._root / MEASUREMENTS_DIR / require_valid_id(measurement_id)

    def path_for(self, measurement_id: str, slot: str) -> Path:
        if slot not in SLOTS:
            raise StorageError(f"unknown artifact slot {slot!r}", measurement_id=measurement_id)
        return self.directory(measurement_id) / slot

    def relative_path(self, measurement_id: str, slot: str) -> str:
        return self.path_for(measurement_id, slot).relative_to(self._root).as_posix()

    def exists(self, measurement_id: str, slot: str) -> bool:
        return self.path_for(measurement_id, slot).is_file()

    # -- write path ----------------------------------------------------------

    def allocate(self, measurement_id: str) -> Path:
        """Create the measurement's directory. Fails if it already exists."""
        d = self.directory(measurement_id)
        try:
            d.parent.mkdir(parents=True, exist_ok=True)
            d.mkdir()
        except FileExistsError as e:
            raise StorageError("artifact directory already allocated", measurement_id=measurement_id) from e
        except OSError as e:
            raise StorageError("cannot allocate artifact directory", measurement_id=measurement_id) from e
        return d

    def discard(self, measurement_id: str) -> None:
        d = self.directory(measurement_id)
        try:
            shutil.rmtree(d)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError("cannot remove artifact directory", measurement_id=measurement_id) from e

    def scratch_dir(self, measurement_id: str) -> Path:
        d = self.directory(measurement_id) / SCRATCH_DIR
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("cannot create scratch directory", measurement_id=measurement_id) from e
        return d

    def write_artifact(self, measurement_id: str, slot: str, data: bytes) -> Path:
        final_path = self.path_for(measurement_id, slot)
        if not final_path.parent.is_dir():
            raise StorageError("artifact directory not allocated", measurement_id=measurement_id)
        if final_path.exists():
            raise StorageError(f"artifact {slot} already written", measurement_id=measurement_id)
        try:
            with _temp_under(final_path.parent) as tmp:
                tmp.write_bytes(data)
                _finalize_write(tmp, final_path)
        except OSError as e:
            raise StorageError(f"cannot write artifact {slot}", measurement_id=measurement_id) from e
        return final_path

    def write_json(self, measurement_id: str, slot: str, obj: Any) -> Path:
        return self.write_artifact(measurement_id, slot, _canon_json(obj))

    def write_image(self, measurement_id: str, data: bytes) -> Path:
        return self.write_artifact(measurement_id, IMAGE, data)

    def adopt_artifact(self, measurement_id: str, slot: str, src: Path) -> Path:
        """Move a file produced elsewhere (e.g. by the proving toolchain) into ``slot``."""
        final_path = self.path_for(measurement_id, slot)
        if final_path.exists():
            raise StorageError(f"artifact {slot} already written", measurement_id=measurement_id)
        if not src.is_file():
            raise StorageError(f"toolchain output for {slot} is missing", measurement_id=measurement_id)
        try:
            _finalize_write(src, final_path)
        except OSError as e:
            raise StorageError(f"cannot move artifact {slot} into place", measurement_id=measurement_id) from e
        return final_path

    # -- read path -----------------------------------------------------------

    def read_artifact(self, measurement_id: str, slot: str) -> bytes:
        p = self.path_for(measurement_id, slot)
        try:
            return p.read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFound(f"{slot} for {measurement_id}") from e

    def read_json(self, measurement_id: str, slot: str) -> Any:
        return json.loads(self.read_artifact(measurement_id, slot).decode("utf-8"))

    def read_image(self, measurement_id: str) -> bytes:
        return self.read_artifact(measurement_id, IMAGE)


__all__ = [
    "ArtifactStore",
    "ArtifactNotFound",
    "SLOTS",
    "IMAGE",
    "INPUT",
    "WITNESS",
    "PROOF",
    "PUBLIC",
    "ATTESTATION",
]
