from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from typing import Any, Dict, Optional

import pytest
from httpx import AsyncClient, Response

from conftest import JPEG, PATH_HASHES

# Covered:
#  - POST /measurements : multipart upload -> {measurement_id, url}
#  - GET  /status/{id}  : polling view, attestation present iff Completed
#  - GET  /img/{id}     : stored image bytes
#  - Validation failures are 400/413 problem+json and leave nothing behind

START = {"x": 0, "y": 0, "z": 0}
END = {"x": 30, "y": 40, "z": 0}


async def _submit(
    client: AsyncClient,
    *,
    image: Optional[bytes] = JPEG,
    start: Any = START,
    end: Any = END,
    claimed: Optional[str] = None,
) -> Response:
    data: Dict[str, str] = {}
    if start is not None:
        data["startPoint"] = start if isinstance(start, str) else json.dumps(start)
    if end is not None:
        data["endPoint"] = end if isinstance(end, str) else json.dumps(end)
    if claimed is not None:
        data["claimedDistance"] = claimed
    files = {"image": ("photo.jpg", image, "image/jpeg")} if image is not None else None
    if files is None:
        # keep the request multipart even without a file part
        files = {"note": ("note.txt", b"", "text/plain")}
    return await client.post("/measurements", data=data, files=files)


async def _empty_storage(app) -> bool:
    counts = await app.state.store.count_by_status()
    measurements_dir = app.state.artifacts.root / "measurements"
    return sum(counts.values()) == 0 and not any(measurements_dir.iterdir())


def _assert_problem(resp: Response, status: int) -> Dict[str, Any]:
    assert resp.status_code == status
    assert resp.headers["content-type"].startswith("application/problem+json")
    body = resp.json()
    assert body["status"] == status
    assert body["title"]
    return body


# ---------------------------
# Happy path
# ---------------------------


@pytest.mark.asyncio
async def test_submit_then_poll_until_completed(aclient, settle):
    resp = await _submit(aclient, claimed="50")
    assert resp.status_code == 200
    body = resp.json()
    mid = body["measurement_id"]
    assert uuid.UUID(mid).version == 4
    assert body["url"] == f"http://testserver/status/{mid}"

    await settle(mid)

    status = await aclient.get(f"/status/{mid}")
    assert status.status_code == 200
    view = status.json()
    assert view["id"] == mid
    assert view["status"] == "Completed"
    assert view["image_path"] == f"measurements/{mid}/image.jpg"
    assert view["start_point"] == {"x": 0.0, "y": 0.0, "z": 0.0}
    assert view["end_point"] == {"x": 30.0, "y": 40.0, "z": 0.0}
    att = view["attestation"]
    assert set(att) == {"attestationId", "merklePath", "leafCount", "index"}
    assert att["merklePath"] == PATH_HASHES
    assert 0 <= att["index"] < att["leafCount"]


@pytest.mark.asyncio
async def test_claimed_distance_is_optional(aclient, settle):
    resp = await _submit(aclient)
    mid = resp.json()["measurement_id"]
    await settle(mid)
    assert (await aclient.get(f"/status/{mid}")).json()["status"] == "Completed"


@pytest.mark.asyncio
async def test_status_reads_are_idempotent(aclient, settle):
    mid = (await _submit(aclient)).json()["measurement_id"]
    await settle(mid)

    first = await aclient.get(f"/status/{mid}")
    second = await aclient.get(f"/status/{mid}")
    assert first.content == second.content


@pytest.mark.asyncio
async def test_in_progress_measurement_has_no_attestation(aclient, toolchain, settle):
    toolchain.gate = asyncio.Event()
    mid = (await _submit(aclient)).json()["measurement_id"]

    view = (await aclient.get(f"/status/{mid}")).json()
    assert view["status"] in ("Pending", "Processing")
    assert "attestation" not in view

    toolchain.gate.set()
    await settle(mid)
    assert (await aclient.get(f"/status/{mid}")).json()["status"] == "Completed"


@pytest.mark.asyncio
async def test_wrong_claim_ends_failed(aclient, toolchain, settle):
    mid = (await _submit(aclient, claimed="51")).json()["measurement_id"]
    await settle(mid)

    view = (await aclient.get(f"/status/{mid}")).json()
    assert view["status"] == "Failed"
    assert "attestation" not in view
    assert "error" not in view
    assert toolchain.calls == []


@pytest.mark.asyncio
async def test_attestation_failure_ends_failed(aclient, network, settle):
    network.events = ["error"]
    mid = (await _submit(aclient)).json()["measurement_id"]
    await settle(mid)

    view = (await aclient.get(f"/status/{mid}")).json()
    assert view["status"] == "Failed"
    assert "attestation" not in view


# ---------------------------
# Images
# ---------------------------


@pytest.mark.asyncio
async def test_image_is_served_back(aclient):
    mid = (await _submit(aclient)).json()["measurement_id"]

    resp = await aclient.get(f"/img/{mid}")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    assert resp.headers["content-disposition"] == f'inline; filename="{mid}.jpg"'
    assert resp.content == JPEG
    assert (await aclient.get(f"/img/{mid}")).content == resp.content


@pytest.mark.asyncio
@pytest.mark.parametrize("ident", [str(uuid.uuid4()), "not-a-uuid", "..%2F..%2Fetc"])
async def test_image_not_found(aclient, ident):
    _assert_problem(await aclient.get(f"/img/{ident}"), 404)


# ---------------------------
# Unknown ids
# ---------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("ident", [str(uuid.uuid4()), "not-a-uuid", "7C9E6679-7425-40DE-944B-E07FC1F90AE7"])
async def test_unknown_measurement_is_404(aclient, ident):
    body = _assert_problem(await aclient.get(f"/status/{ident}"), 404)
    assert body["code"] == "not_found"


# ---------------------------
# Rejected submissions
# ---------------------------


@pytest.mark.asyncio
async def test_empty_image_is_rejected(app, aclient):
    body = _assert_problem(await _submit(aclient, image=b""), 400)
    assert body["code"] == "bad_request"
    assert await _empty_storage(app)


@pytest.mark.asyncio
async def test_missing_image_is_rejected(app, aclient):
    _assert_problem(await _submit(aclient, image=None), 400)
    assert await _empty_storage(app)


@pytest.mark.asyncio
async def test_oversized_image_is_rejected(app, aclient, config):
    body = _assert_problem(await _submit(aclient, image=b"\xff" * (config.max_image_bytes + 1)), 413)
    assert body["details"] == {"limit": config.max_image_bytes}
    assert await _empty_storage(app)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start, end",
    [
        (None, END),
        (START, None),
        ("{not json", END),
        ("[0, 0, 0]", END),
        ({"x": 0, "y": 0}, END),
        ({"x": "0", "y": 0, "z": 0}, END),
        ({"x": True, "y": 0, "z": 0}, END),
        (START, '{"x": NaN, "y": 0, "z": 0}'),
        (START, '{"x": 1e400, "y": 0, "z": 0}'),
    ],
)
async def test_malformed_points_are_rejected(app, aclient, start, end):
    _assert_problem(await _submit(aclient, start=start, end=end), 400)
    assert await _empty_storage(app)


@pytest.mark.asyncio
@pytest.mark.parametrize("claimed", ["-1", "12.5", "fifty", "١٢"])
async def test_malformed_claim_is_rejected(app, aclient, claimed):
    _assert_problem(await _submit(aclient, claimed=claimed), 400)
    assert await _empty_storage(app)


@pytest.mark.asyncio
async def test_out_of_range_claim_is_rejected(app, aclient):
    _assert_problem(await _submit(aclient, claimed=str(2**64)), 400)
    assert await _empty_storage(app)


@pytest.mark.asyncio
async def test_submissions_get_distinct_ids(aclient, settle):
    ids = [(await _submit(aclient)).json()["measurement_id"] for _ in range(3)]
    assert len(set(ids)) == 3
    for mid in ids:
        await settle(mid)


@pytest.mark.asyncio
async def test_identical_concurrent_submissions_attest_independently(app, aclient, settle):
    responses = await asyncio.gather(*(_submit(aclient, claimed="50") for _ in range(2)))
    ids = [r.json()["measurement_id"] for r in responses]
    await asyncio.gather(*(settle(mid) for mid in ids))

    views = [(await aclient.get(f"/status/{mid}")).json() for mid in ids]
    assert [v["status"] for v in views] == ["Completed", "Completed"]
    assert views[0]["attestation"]["attestationId"] != views[1]["attestation"]["attestationId"]
    for mid in ids:
        assert app.state.artifacts.read_json(mid, "public.json") == ["50"]


# ---------------------------
# Storage faults & shutdown races
# ---------------------------


@pytest.mark.asyncio
async def test_failed_insert_leaves_no_artifacts(app, aclient, monkeypatch):
    async def insert(**kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(app.state.store, "insert", insert)

    body = _assert_problem(await _submit(aclient), 500)
    assert body["code"] == "server_error"
    assert await _empty_storage(app)


@pytest.mark.asyncio
async def test_shutdown_during_submission_fails_the_record(app, aclient, toolchain, monkeypatch):
    store = app.state.store
    original = store.insert
    inserted = []

    async def insert(**kwargs):
        record = await original(**kwargs)
        inserted.append(record.id)
        await app.state.pipeline.stop()
        return record

    monkeypatch.setattr(store, "insert", insert)

    body = _assert_problem(await _submit(aclient), 500)
    assert body["code"] == "server_error"

    rec = await store.get(inserted[0])
    assert rec is not None
    assert rec.status.value == "Failed"
    assert rec.error is not None and rec.error.startswith("not scheduled")
    assert toolchain.calls == []
