from __future__ import annotations

import json
import re

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import JPEG
from zkmeasure.app import create_app

# These tests exercise the operational endpoints mounted by the app:
#   - GET /healthz, /readyz, /version
#   - GET /metrics
# plus the X-Request-Id propagation every response carries.


@pytest.mark.asyncio
async def test_healthz_ok(aclient):
    resp = await aclient.get("/healthz")
    assert resp.status_code == 200
    assert "application/json" in resp.headers.get("content-type", "").lower()

    data = resp.json()
    assert data["status"] == "ok"
    assert data["service"] == "zkmeasure"
    assert data["uptime_seconds"] >= 0


@pytest.mark.asyncio
async def test_version_endpoint(aclient):
    data = (await aclient.get("/version")).json()
    assert re.match(r"^\d+\.\d+\.\d+", data["version"])
    if data.get("git") is not None:
        assert isinstance(data["git"], str)
    assert isinstance(data["pid"], int)


@pytest.mark.asyncio
async def test_readyz_ok(aclient):
    resp = await aclient.get("/readyz")
    assert resp.status_code == 200

    data = resp.json()
    assert data["status"] == "ok"
    assert data["inflight"] == 0
    assert set(data["checks"]) == {"storage", "database", "toolchain", "attestation"}
    assert all(c["ok"] for c in data["checks"].values())


@pytest.mark.asyncio
async def test_readyz_degraded_without_verification_key(tmp_path, config, toolchain):
    cfg = config.model_copy(update={"verification_key": tmp_path / "absent.json", "attestation_seed": None})
    app = create_app(cfg, toolchain=toolchain)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            resp = await client.get("/readyz")

    assert resp.status_code == 503
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["checks"]["toolchain"]["ok"] is False
    assert str(tmp_path / "absent.json") in data["checks"]["toolchain"]["missing"]
    assert data["checks"]["attestation"]["ok"] is False
    assert data["checks"]["storage"]["ok"] is True


@pytest.mark.asyncio
async def test_metrics_exposed(aclient, settle):
    mid = (await aclient.post(
        "/measurements",
        data={"startPoint": json.dumps({"x": 0, "y": 0, "z": 0}), "endPoint": json.dumps({"x": 3, "y": 4, "z": 0})},
        files={"image": ("photo.jpg", JPEG, "image/jpeg")},
    )).json()["measurement_id"]
    await settle(mid)

    resp = await aclient.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    text = resp.text
    assert "measurements_submitted_total 1.0" in text
    assert 'measurement_pipeline_outcomes_total{status="Completed"} 1.0' in text
    assert 'measurement_pipeline_stage_seconds_count{stage="prove"} 1.0' in text
    assert 'http_requests_total{method="POST",path="/measurements",status="200"} 1.0' in text


@pytest.mark.asyncio
async def test_request_id_is_echoed(aclient):
    resp = await aclient.get("/healthz", headers={"X-Request-Id": "abc-123"})
    assert resp.headers["X-Request-Id"] == "abc-123"

    generated = await aclient.get("/healthz", headers={"X-Request-Id": "not a valid id!"})
    assert re.fullmatch(r"[0-9a-f]{32}", generated.headers["X-Request-Id"])


@pytest.mark.asyncio
async def test_problem_carries_request_id(aclient):
    resp = await aclient.get("/status/not-a-uuid", headers={"X-Request-Id": "req-42"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["request_id"] == "req-42"
    assert body["instance"] == "/status/not-a-uuid"


@pytest.mark.asyncio
async def test_cors_preflight(aclient):
    resp = await aclient.options(
        "/measurements",
        headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
    )
    assert resp.status_code == 200
    assert resp.headers.get("access-control-allow-origin") in ("*", "https://app.example")
