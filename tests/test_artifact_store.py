from __future__ import annotations

import json

import pytest

from zkmeasure.errors import StorageError
from zkmeasure.storage import fs as slots
from zkmeasure.storage.fs import ArtifactNotFound, ArtifactStore
from zkmeasure.storage.ids import InvalidMeasurementId, is_valid_id, new_measurement_id


def test_new_ids_are_canonical_uuid4():
    ids = {new_measurement_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(is_valid_id(i) for i in ids)
    assert not is_valid_id("../../etc/passwd")
    assert not is_valid_id("7C9E6679-7425-40DE-944B-E07FC1F90AE7")  # upper case is not canonical
    assert not is_valid_id(None)


def test_allocate_creates_directory_once(artifacts: ArtifactStore):
    mid = new_measurement_id()
    d = artifacts.allocate(mid)
    assert d.is_dir()
    assert d == artifacts.root / "measurements" / mid

    with pytest.raises(StorageError):
        artifacts.allocate(mid)


def test_rejects_non_uuid_ids(artifacts: ArtifactStore):
    with pytest.raises(InvalidMeasurementId):
        artifacts.directory("../escape")
    with pytest.raises(InvalidMeasurementId):
        artifacts.allocate("not-a-uuid")


def test_unknown_slot_is_rejected(artifacts: ArtifactStore):
    mid = new_measurement_id()
    artifacts.allocate(mid)
    with pytest.raises(StorageError):
        artifacts.write_artifact(mid, "payload.sh", b"#!/bin/sh")
    with pytest.raises(StorageError):
        artifacts.path_for(mid, "../image.jpg")


def test_write_requires_allocation(artifacts: ArtifactStore):
    with pytest.raises(StorageError):
        artifacts.write_image(new_measurement_id(), b"\xff\xd8")


def test_slots_are_write_once(artifacts: ArtifactStore):
    mid = new_measurement_id()
    artifacts.allocate(mid)
    artifacts.write_json(mid, slots.INPUT, {"distance_mm": 50})

    with pytest.raises(StorageError):
        artifacts.write_json(mid, slots.INPUT, {"distance_mm": 51})

    assert artifacts.read_json(mid, slots.INPUT) == {"distance_mm": 50}
    assert artifacts.exists(mid, slots.INPUT)
    # no temp files left behind
    assert sorted(p.name for p in artifacts.directory(mid).iterdir()) == [slots.INPUT]


def test_json_is_written_canonically(artifacts: ArtifactStore):
    mid = new_measurement_id()
    artifacts.allocate(mid)
    p = artifacts.write_json(mid, slots.PUBLIC, {"b": 1, "a": [1, 2]})
    assert p.read_bytes() == b'{"a":[1,2],"b":1}'


def test_missing_artifact_raises(artifacts: ArtifactStore):
    mid = new_measurement_id()
    artifacts.allocate(mid)
    with pytest.raises(ArtifactNotFound):
        artifacts.read_image(mid)
    assert not artifacts.exists(mid, slots.IMAGE)


def test_adopt_moves_toolchain_output(artifacts: ArtifactStore):
    mid = new_measurement_id()
    artifacts.allocate(mid)
    work = artifacts.scratch_dir(mid)
    src = work / slots.PROOF
    src.write_text(json.dumps({"pi_a": []}))

    final = artifacts.adopt_artifact(mid, slots.PROOF, src)
    assert final == artifacts.path_for(mid, slots.PROOF)
    assert not src.exists()
    assert artifacts.read_json(mid, slots.PROOF) == {"pi_a": []}

    src.write_text("{}")
    with pytest.raises(StorageError):
        artifacts.adopt_artifact(mid, slots.PROOF, src)
    with pytest.raises(StorageError):
        artifacts.adopt_artifact(mid, slots.PUBLIC, work / "missing.json")


def test_measurements_do_not_share_paths(artifacts: ArtifactStore):
    a, b = new_measurement_id(), new_measurement_id()
    artifacts.allocate(a)
    artifacts.allocate(b)
    artifacts.write_image(a, b"image-a")
    artifacts.write_image(b, b"image-b")

    assert artifacts.path_for(a, slots.IMAGE) != artifacts.path_for(b, slots.IMAGE)
    assert artifacts.read_image(a) == b"image-a"
    assert artifacts.read_image(b) == b"image-b"
    assert artifacts.relative_path(a, slots.IMAGE) == f"measurements/{a}/image.jpg"


def test_discard_removes_only_that_measurement(artifacts: ArtifactStore):
    a, b = new_measurement_id(), new_measurement_id()
    artifacts.allocate(a)
    artifacts.allocate(b)
    artifacts.write_image(a, b"image-a")
    artifacts.write_image(b, b"image-b")

    artifacts.discard(a)
    assert not artifacts.directory(a).exists()
    assert artifacts.read_image(b) == b"image-b"

    # already gone
    artifacts.discard(a)
