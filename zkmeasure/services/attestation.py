"""
Attestation submission: proof -> published attestation -> Merkle inclusion proof.

Per call:

1) open a fresh session (credentials come from the immutable ``Config``),
2) submit the proof and wait for ``attestationConfirmed``; intermediate events
   (``includedInBlock``, ``finalized``) are only logged, may arrive out of order
   or not at all, and never drive control flow,
3) query the inclusion path with the attestation id and the leaf digest,
4) validate and persist ``attestation.json``,
5) close the session, on every path.

The wait for confirmation is bounded by ``ATTESTATION_TIMEOUT_S``. Every
failure surfaces as one ``AttestationError`` with the original exception as
its cause.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from zkmeasure.adapters.attestation_ws import (
    CURVE,
    EVENT_CONFIRMED,
    EVENT_ERROR,
    PROOF_SYSTEM,
    AttestationEvent,
    AttestationSession,
    SessionFactory,
)
from zkmeasure.errors import AttestationError
from zkmeasure.logging import get_logger
from zkmeasure.models.measurement import AttestationData
from zkmeasure.storage import fs as slots
from zkmeasure.storage.fs import ArtifactStore

log = get_logger(__name__)


@dataclass(frozen=True)
class Confirmation:
    attestation_id: int
    leaf_digest: Optional[str]


def _sha3(data: bytes) -> bytes:
    return hashlib.sha3_256(data).digest()


def _canonical_json_bytes(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _signal_bytes(signal: str) -> bytes:
    v = int(signal)
    if v < 0:
        raise ValueError(f"public signal must be a non-negative field element: {signal!r}")
    return v.to_bytes(32, "big")


def compute_leaf_digest(vk: Dict[str, Any], public_signals: Sequence[str]) -> str:
    """
    Leaf digest binding proof system, verification key and public inputs:

        H( "groth16:bn128" || H(canon(vk)) || H(sig_0 || sig_1 || ...) )

    with H = SHA3-256 and each signal as a 32-byte big-endian integer.
    """
    tag = f"{PROOF_SYSTEM}:{CURVE}".encode("ascii")
    vk_hash = _sha3(_canonical_json_bytes(vk))
    sig_hash = _sha3(b"".join(_signal_bytes(s) for s in public_signals))
    return "0x" + _sha3(tag + vk_hash + sig_hash).hex()


def parse_inclusion(raw: Dict[str, Any], attestation_id: int, leaf_digest: str) -> AttestationData:
    """Turn a ``poe_proofPath`` result into validated ``AttestationData``."""
    leaf = raw.get("leaf")
    if leaf is not None and str(leaf).lower() != leaf_digest.lower():
        raise ValueError(f"inclusion proof is for leaf {leaf}, expected {leaf_digest}")
    return AttestationData(
        attestation_id=attestation_id,
        merkle_path=raw.get("proof", []),
        leaf_count=raw["numberOfLeaves"],
        leaf_index=raw["leafIndex"],
    )


class AttestationSubmitter:
    def __init__(
        self,
        artifacts: ArtifactStore,
        vk: Optional[Dict[str, Any]],
        open_session: SessionFactory,
        *,
        confirmation_timeout_s: float,
    ):
        self._artifacts = artifacts
        self._vk = vk
        self._open_session = open_session
        self._timeout_s = confirmation_timeout_s

    async def submit(self, measurement_id: str, proof: Dict[str, Any], public_signals: List[str]) -> AttestationData:
        if self._vk is None:
            raise AttestationError("verification key is not loaded", measurement_id=measurement_id)
        try:
            session = await self._open_session()
        except AttestationError as e:
            e.measurement_id = measurement_id
            raise
        except Exception as e:
            raise AttestationError("cannot open attestation session", measurement_id=measurement_id) from e

        try:
            data, record = await self._run(session, measurement_id, proof, public_signals)
        except AttestationError:
            raise
        except Exception as e:
            raise AttestationError("attestation failed", measurement_id=measurement_id) from e
        finally:
            await self._close(session, measurement_id)

        self._artifacts.write_json(measurement_id, slots.ATTESTATION, record)
        return data

    async def _run(self, session: AttestationSession, measurement_id: str, proof, public_signals):
        sub = await session.submit(proof, public_signals, self._vk)
        log.info("attestation.submitted", measurement_id=measurement_id, subscription=sub)

        try:
            confirmed = await asyncio.wait_for(self._await_confirmation(session, measurement_id), self._timeout_s)
        except asyncio.TimeoutError as e:
            raise AttestationError(
                f"no attestation confirmation within {self._timeout_s:.0f}s", measurement_id=measurement_id
            ) from e

        leaf = confirmed.leaf_digest or compute_leaf_digest(self._vk, public_signals)
        raw = await session.proof_path(confirmed.attestation_id, leaf)
        try:
            data = parse_inclusion(raw, confirmed.attestation_id, leaf)
        except (KeyError, ValueError, ValidationError) as e:
            raise AttestationError("invalid inclusion proof", measurement_id=measurement_id) from e

        log.info(
            "attestation.included",
            measurement_id=measurement_id,
            attestation_id=data.attestation_id,
            leaf_index=data.leaf_index,
            leaf_count=data.leaf_count,
        )
        record = {**data.model_dump(by_alias=True), "leafDigest": leaf, "root": raw.get("root")}
        return data, record

    async def _await_confirmation(self, session: AttestationSession, measurement_id: str) -> Confirmation:
        ev: AttestationEvent
        async for ev in session.events():
            if ev.kind == EVENT_CONFIRMED:
                if ev.attestation_id is None:
                    raise AttestationError("confirmation event without attestation id", measurement_id=measurement_id)
                log.info("attestation.confirmed", measurement_id=measurement_id, attestation_id=ev.attestation_id)
                return Confirmation(attestation_id=ev.attestation_id, leaf_digest=ev.leaf_digest)
            if ev.kind == EVENT_ERROR:
                raise AttestationError(
                    f"network reported error: {ev.message or 'unknown'}", measurement_id=measurement_id
                )
            log.info(
                "attestation.event",
                measurement_id=measurement_id,
                kind=ev.kind,
                block_hash=ev.block_hash,
                tx_hash=ev.tx_hash,
            )
        raise AttestationError("event stream ended before confirmation", measurement_id=measurement_id)

    async def _close(self, session: AttestationSession, measurement_id: str) -> None:
        try:
            await session.close()
        except Exception as e:
            # logged only
            log.warning("attestation.close_failed", measurement_id=measurement_id, error=str(e))


__all__ = ["AttestationSubmitter", "Confirmation", "compute_leaf_digest", "parse_inclusion"]
