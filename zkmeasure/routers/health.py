from __future__ import annotations

import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from fastapi import APIRouter, Request, Response, status

from zkmeasure import version as svc_version
from zkmeasure.logging import get_logger

log = get_logger(__name__)
router = APIRouter(tags=["health"])

_PROCESS_START = time.time()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uptime_seconds() -> float:
    return max(0.0, time.time() - _PROCESS_START)


def _check_storage(state: Any) -> Tuple[bool, Dict[str, Any]]:
    """
    Verifies the artifact root exists and is writable. Does not create it.
    """
    root = state.artifacts.root
    info: Dict[str, Any] = {"path": str(root)}
    if not root.is_dir():
        info.update(error="directory missing")
        return False, info
    probe = root / ".rw_probe"
    try:
        probe.write_bytes(b"ok")
        probe.unlink()
    except OSError as e:
        info.update(error=str(e))
        return False, info
    return True, info


async def _check_database(state: Any) -> Tuple[bool, Dict[str, Any]]:
    info: Dict[str, Any] = {"path": state.store.db_path}
    try:
        ok = await state.store.ping()
    except Exception as e:
        info.update(error=f"{type(e).__name__}: {e}")
        return False, info
    return ok, info


def _check_toolchain(state: Any) -> Tuple[bool, Dict[str, Any]]:
    """Compiled circuit, proving key and verification key present."""
    info: Dict[str, Any] = {}
    missing_fn = getattr(state.toolchain, "missing_artifacts", None)
    missing = list(missing_fn()) if callable(missing_fn) else []
    if state.verification_key is None:
        missing.append(str(state.config.verification_key))
    if missing:
        info["missing"] = missing
    return not missing, info


def _check_attestation(state: Any) -> Tuple[bool, Dict[str, Any]]:
    ok = bool(state.attestation_configured)
    info: Dict[str, Any] = {"url": state.config.attestation_ws_url}
    if not ok:
        info["error"] = "ATTESTATION_SEED not configured"
    return ok, info


def _version_blob() -> Dict[str, Any]:
    return {
        "service": "zkmeasure",
        "version": svc_version.__version__,
        "git": svc_version.git_describe(),
        "python": {
            "version": "{}.{}.{}".format(*sys.version_info[:3]),
            "impl": sys.implementation.name,
        },
        "pid": os.getpid(),
        "started_at": datetime.fromtimestamp(_PROCESS_START, tz=timezone.utc).isoformat(),
        "now": _utcnow_iso(),
        "uptime_seconds": round(_uptime_seconds(), 3),
    }


@router.get("/healthz", summary="Liveness probe", response_model=None)
def healthz() -> Dict[str, Any]:
    """Always 200 while the process is serving requests."""
    return {"status": "ok", **_version_blob()}


@router.get("/version", summary="Service version", response_model=None)
def version() -> Dict[str, Any]:
    return _version_blob()


@router.get("/readyz", summary="Readiness probe", response_model=None)
async def readyz(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness: storage writable, database reachable, proving artifacts present,
    attestation credentials configured. 200 when all pass, 503 otherwise.
    """
    state = request.app.state
    checks: Dict[str, Dict[str, Any]] = {}

    for name, (ok, info) in (
        ("storage", _check_storage(state)),
        ("database", await _check_database(state)),
        ("toolchain", _check_toolchain(state)),
        ("attestation", _check_attestation(state)),
    ):
        checks[name] = {"ok": ok, **info}

    ok_all = all(c["ok"] for c in checks.values())
    if not ok_all:
        log.info("readyz.degraded", failing=[k for k, c in checks.items() if not c["ok"]])
    response.status_code = status.HTTP_200_OK if ok_all else status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ok" if ok_all else "degraded",
        "now": _utcnow_iso(),
        "uptime_seconds": round(_uptime_seconds(), 3),
        "inflight": len(state.pipeline.inflight()),
        "checks": checks,
    }


def get_router() -> APIRouter:
    return router
