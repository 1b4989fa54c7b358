from __future__ import annotations

import asyncio
import json
from itertools import count
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from zkmeasure.adapters.attestation_ws import (
    EVENT_CONFIRMED,
    EVENT_ERROR,
    EVENT_FINALIZED,
    EVENT_INCLUDED,
    AttestationEvent,
)
from zkmeasure.adapters.snarkjs import ToolchainError
from zkmeasure.app import create_app
from zkmeasure.config import Config
from zkmeasure.storage.fs import ArtifactStore
from zkmeasure.storage.sqlite import MeasurementStore

# A stand-in verification key; only its canonical JSON matters to the service.
VK: Dict[str, Any] = {
    "protocol": "groth16",
    "curve": "bn128",
    "nPublic": 1,
    "vk_alpha_1": ["1", "2", "1"],
    "IC": [["3", "4", "1"], ["5", "6", "1"]],
}

# Smallest thing that looks like a JPEG to a browser.
JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00" + b"\x00" * 64 + b"\xff\xd9"

ROOT = "0x" + "cd" * 32
PATH_HASHES = ["0x" + "ab" * 32, "0x" + "ef" * 32]


# ----------------------------
# Proving toolchain stand-in
# ----------------------------
class FakeToolchain:
    """
    Writes a "witness" that echoes the circuit input and a proof whose public
    signals are the claimed distance, the way the distance circuit does.
    """

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.fail_witness = False
        self.fail_prove = False
        self.public_override: Optional[List[str]] = None
        self.gate: Optional[asyncio.Event] = None

    def missing_artifacts(self) -> List[str]:
        return []

    async def compute_witness(self, input_path: Path, witness_path: Path) -> None:
        self.calls.append("witness")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_witness:
            raise ToolchainError("witness failed", returncode=1, stderr="Error: Assert Failed.")
        data = json.loads(input_path.read_text())
        witness_path.write_text(json.dumps({"distance_mm": data["distance_mm"]}))

    async def prove(self, witness_path: Path, proof_path: Path, public_path: Path) -> None:
        self.calls.append("prove")
        if self.fail_prove:
            raise ToolchainError("prove failed", returncode=1, stderr="Error: invalid witness length")
        witness = json.loads(witness_path.read_text())
        proof_path.write_text(
            json.dumps(
                {
                    "pi_a": ["1", "2", "1"],
                    "pi_b": [["1", "2"], ["3", "4"], ["1", "0"]],
                    "pi_c": ["5", "6", "1"],
                    "protocol": "groth16",
                    "curve": "bn128",
                }
            )
        )
        public = self.public_override if self.public_override is not None else [str(witness["distance_mm"])]
        public_path.write_text(json.dumps(public))


# ----------------------------
# Attestation network stand-in
# ----------------------------
class FakeSession:
    def __init__(self, network: "FakeAttestationNetwork", attestation_id: int) -> None:
        self.network = network
        self.attestation_id = attestation_id
        self.submitted: Optional[Dict[str, Any]] = None
        self.proof_path_calls: List[tuple] = []
        self.closed = False

    async def submit(self, proof, public_signals, vk) -> str:
        if self.network.submit_error is not None:
            raise self.network.submit_error
        self.submitted = {"proof": proof, "public_signals": list(public_signals), "vk": vk}
        return f"sub-{self.attestation_id}"

    async def events(self) -> AsyncIterator[AttestationEvent]:
        for kind in self.network.events:
            if kind == EVENT_CONFIRMED:
                yield AttestationEvent(
                    kind=kind, attestation_id=self.attestation_id, leaf_digest=self.network.leaf_digest
                )
            elif kind == EVENT_ERROR:
                yield AttestationEvent(kind=kind, message="proof rejected by verifier")
            else:
                yield AttestationEvent(kind=kind, block_hash="0x" + "01" * 32)
        if self.network.hang:
            await asyncio.Event().wait()

    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        self.proof_path_calls.append((attestation_id, leaf_digest))
        if self.network.inclusion_override is not None:
            return dict(self.network.inclusion_override)
        return {
            "root": ROOT,
            "proof": list(PATH_HASHES),
            "numberOfLeaves": 4,
            "leafIndex": 1,
            "leaf": leaf_digest,
        }

    async def close(self) -> None:
        self.closed = True


class FakeAttestationNetwork:
    """Hands out one scripted session per submission, each with a fresh attestation id."""

    def __init__(self) -> None:
        self.events: List[str] = [EVENT_INCLUDED, EVENT_FINALIZED, EVENT_CONFIRMED]
        self.hang = False
        self.leaf_digest: Optional[str] = None
        self.open_error: Optional[BaseException] = None
        self.submit_error: Optional[BaseException] = None
        self.inclusion_override: Optional[Dict[str, Any]] = None
        self.sessions: List[FakeSession] = []
        self._ids = count(100)

    async def open(self) -> FakeSession:
        if self.open_error is not None:
            raise self.open_error
        session = FakeSession(self, next(self._ids))
        self.sessions.append(session)
        return session


# ----------------------------
# Configuration & components
# ----------------------------
@pytest.fixture
def vk_file(tmp_path: Path) -> Path:
    p = tmp_path / "verification_key.json"
    p.write_text(json.dumps(VK))
    return p


@pytest.fixture
def config(tmp_path: Path, vk_file: Path) -> Config:
    return Config(
        storage_dir=tmp_path / "storage",
        verification_key=vk_file,
        max_image_bytes=64 * 1024,
        attestation_seed="test-seed",
        attestation_timeout_s=5.0,
        shutdown_timeout_s=0.5,
        log_level="WARNING",
    )


@pytest.fixture
def toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def network() -> FakeAttestationNetwork:
    return FakeAttestationNetwork()


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactStore:
    store = ArtifactStore(tmp_path / "artifacts")
    store.ensure_root()
    return store


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[MeasurementStore]:
    s = MeasurementStore(tmp_path / "measurements.sqlite3")
    await s.connect()
    try:
        yield s
    finally:
        await s.close()


# ----------------------------
# FastAPI application fixtures
# ----------------------------
@pytest.fixture
async def app(config: Config, toolchain: FakeToolchain, network: FakeAttestationNetwork) -> AsyncIterator[FastAPI]:
    """App with its lifespan running (DB open, pipeline started)."""
    application = create_app(config, toolchain=toolchain, attestation_sessions=network.open)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def aclient(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def settle(app: FastAPI):
    """Wait for a measurement's background run to finish."""

    async def _settle(measurement_id: str) -> None:
        await asyncio.wait_for(app.state.pipeline.join(measurement_id), timeout=10)

    return _settle
