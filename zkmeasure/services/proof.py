"""
Proof generation: circuit inputs -> witness -> Groth16 proof.

The distance circuit proves, without revealing the points, that

    claimed = round(sqrt(dx^2 + dy^2 + dz^2))

over integer millimetre coordinates. This module:

1) rounds the client's coordinates to whole millimetres,
2) checks the relation itself before spending any CPU on the toolchain, so an
   arithmetically wrong claim is a ``WitnessError`` and never a proof,
3) writes ``input.json``, runs witness generation then proving,
4) moves ``witness.wtns`` / ``proof.json`` / ``public.json`` into the
   measurement's artifact directory and checks the public signals.

All IO goes through ``ArtifactStore`` and a toolchain object (``SnarkjsToolchain``
in production).
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from zkmeasure.adapters.snarkjs import ToolchainError
from zkmeasure.errors import ProvingError, StorageError, WitnessError
from zkmeasure.logging import get_logger
from zkmeasure.metrics import Metrics
from zkmeasure.models.measurement import Point3D
from zkmeasure.storage import fs as slots
from zkmeasure.storage.fs import ArtifactStore

log = get_logger(__name__)

IntPoint = Tuple[int, int, int]

# Circuit inputs are signed 64-bit / unsigned 64-bit integers.
_I64_MIN, _I64_MAX = -(2**63), 2**63 - 1
_U64_MAX = 2**64 - 1


class Toolchain(Protocol):
    async def compute_witness(self, input_path: Path, witness_path: Path) -> None: ...

    async def prove(self, witness_path: Path, proof_path: Path, public_path: Path) -> None: ...


@dataclass(frozen=True)
class ProofArtifacts:
    proof: Dict[str, Any]
    public_signals: List[str]


def to_millimetres(value: float) -> int:
    """Round half away from zero to a whole millimetre."""
    if not math.isfinite(value):
        raise ValueError(f"coordinate is not finite: {value!r}")
    return int(Decimal(repr(value)).to_integral_value(rounding=ROUND_HALF_UP))


def to_circuit_point(p: Point3D) -> IntPoint:
    return (to_millimetres(p.x), to_millimetres(p.y), to_millimetres(p.z))


def expected_distance_mm(p1: IntPoint, p2: IntPoint) -> int:
    """Euclidean distance rounded half-up, in exact integer arithmetic."""
    s = sum((a - b) * (a - b) for a, b in zip(p1, p2))
    d = math.isqrt(s)
    # round(sqrt(s)) == d + 1  iff  s - d^2 > d  (s integer, so no exact .5 case)
    if s - d * d > d:
        d += 1
    return d


def claimed_distance_for(start: Point3D, end: Point3D) -> int:
    return expected_distance_mm(to_circuit_point(start), to_circuit_point(end))


def circuit_input(p1: IntPoint, p2: IntPoint, claimed: int) -> Dict[str, Any]:
    return {"point1": list(p1), "point2": list(p2), "distance_mm": int(claimed)}


def check_constraint(p1: IntPoint, p2: IntPoint, claimed: int) -> None:
    for c in (*p1, *p2):
        if not _I64_MIN <= c <= _I64_MAX:
            raise WitnessError(f"coordinate {c} outside the circuit's signed 64-bit range")
    if not 0 <= claimed <= _U64_MAX:
        raise WitnessError(f"claimed distance {claimed} outside the circuit's unsigned 64-bit range")
    expected = expected_distance_mm(p1, p2)
    if claimed != expected:
        raise WitnessError(f"claimed distance {claimed}mm does not satisfy the circuit (expected {expected}mm)")


class ProofGenerator:
    def __init__(self, artifacts: ArtifactStore, toolchain: Toolchain, *, metrics: Optional[Metrics] = None):
        self._artifacts = artifacts
        self._toolchain = toolchain
        self._metrics = metrics

    def _observe(self, stage: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.observe_stage(stage, time.perf_counter() - started)

    async def generate(self, measurement_id: str, p1: IntPoint, p2: IntPoint, claimed: int) -> ProofArtifacts:
        try:
            check_constraint(p1, p2, claimed)
        except WitnessError as e:
            e.measurement_id = measurement_id
            raise

        store = self._artifacts
        input_path = store.write_json(measurement_id, slots.INPUT, circuit_input(p1, p2, claimed))
        work = store.scratch_dir(measurement_id)

        started = time.perf_counter()
        try:
            await self._toolchain.compute_witness(input_path, work / slots.WITNESS)
        except ToolchainError as e:
            raise WitnessError("witness generation failed", measurement_id=measurement_id) from e
        self._observe("witness", started)
        witness_path = store.adopt_artifact(measurement_id, slots.WITNESS, work / slots.WITNESS)

        started = time.perf_counter()
        try:
            await self._toolchain.prove(witness_path, work / slots.PROOF, work / slots.PUBLIC)
        except ToolchainError as e:
            raise ProvingError("Groth16 proving failed", measurement_id=measurement_id) from e
        self._observe("prove", started)
        store.adopt_artifact(measurement_id, slots.PROOF, work / slots.PROOF)
        store.adopt_artifact(measurement_id, slots.PUBLIC, work / slots.PUBLIC)

        artifacts = self._load(measurement_id)
        if artifacts.public_signals[:1] != [str(claimed)]:
            raise ProvingError(
                f"public signals {artifacts.public_signals!r} do not carry the claimed distance {claimed}",
                measurement_id=measurement_id,
            )
        log.info("proof.generated", measurement_id=measurement_id, public_signals=artifacts.public_signals)
        return artifacts

    def _load(self, measurement_id: str) -> ProofArtifacts:
        try:
            proof = self._artifacts.read_json(measurement_id, slots.PROOF)
            public = self._artifacts.read_json(measurement_id, slots.PUBLIC)
        except OSError as e:
            raise StorageError("cannot read proof artifacts", measurement_id=measurement_id) from e
        except ValueError as e:
            raise ProvingError("prover wrote malformed JSON", measurement_id=measurement_id) from e
        if not isinstance(proof, dict) or not isinstance(public, list):
            raise ProvingError("prover output has unexpected shape", measurement_id=measurement_id)
        return ProofArtifacts(proof=proof, public_signals=[str(s) for s in public])


def load_verification_key(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as fh:
        vk = json.load(fh)
    if not isinstance(vk, dict):
        raise ValueError("verification key must be a JSON object")
    return vk


__all__ = [
    "ProofGenerator",
    "ProofArtifacts",
    "Toolchain",
    "to_millimetres",
    "to_circuit_point",
    "expected_distance_mm",
    "claimed_distance_for",
    "circuit_input",
    "check_constraint",
    "load_verification_key",
]
