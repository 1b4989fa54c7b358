from __future__ import annotations

"""
Attestation network session over WebSocket JSON-RPC.

One session per submission; sessions are never shared between measurements.

Wire protocol
-------------
    -> session_authenticate   [{"account", "nonce", "signature"}]       -> true
    -> verify_submitAndWatch  [{"proofSystem": "groth16", "curve": "bn128",
                                "proof", "publicSignals", "vk",
                                "waitFor": "publishedAttestation"}]      -> "<subscription>"
    <- verify_event           {"subscription", "result": {"event": ..., ...}}
    -> poe_proofPath          [attestationId, leafDigest]               -> {"root", "proof",
                                                                            "numberOfLeaves",
                                                                            "leafIndex", "leaf"}
    -> verify_unsubscribe     ["<subscription>"]

Events are ``includedInBlock``, ``finalized``, ``attestationConfirmed`` and
``error``. The account seed never leaves the process: it is expanded with
HKDF-SHA256 into an Ed25519 signing key, ``account`` is the raw public key and
``signature`` the Ed25519 signature over ``zkmeasure-auth:<account>:<nonce>``,
so the network verifies possession with the public key alone.

Unlike the SDK's general-purpose client there is no auto-reconnect: a dropped
connection ends the event stream, and the submitter decides what that means.
"""

import asyncio
import json
import secrets
from dataclasses import dataclass, field
from itertools import count
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from zkmeasure.config import Config
from zkmeasure.errors import AttestationError
from zkmeasure.logging import get_logger
from zkmeasure.version import __version__

log = get_logger(__name__)

PROOF_SYSTEM = "groth16"
CURVE = "bn128"

EVENT_INCLUDED = "includedInBlock"
EVENT_FINALIZED = "finalized"
EVENT_CONFIRMED = "attestationConfirmed"
EVENT_ERROR = "error"


class AttestationRpcError(Exception):
    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


@dataclass(frozen=True)
class AttestationEvent:
    kind: str
    attestation_id: Optional[int] = None
    leaf_digest: Optional[str] = None
    block_hash: Optional[str] = None
    tx_hash: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_wire(cls, payload: Any) -> "AttestationEvent":
        if not isinstance(payload, dict):
            return cls(kind="unknown", raw={"value": payload})
        kind = str(payload.get("event", "unknown"))
        att = payload.get("attestationId")
        if att is not None:
            try:
                att = int(att)
            except (TypeError, ValueError):
                # only the confirmation's id drives anything
                if kind == EVENT_CONFIRMED:
                    raise
                att = None
        return cls(
            kind=kind,
            attestation_id=att,
            leaf_digest=payload.get("leafDigest"),
            block_hash=payload.get("blockHash"),
            tx_hash=payload.get("txHash"),
            message=payload.get("message"),
            raw=dict(payload),
        )


class AttestationSession(Protocol):
    async def submit(self, proof: Dict[str, Any], public_signals: List[str], vk: Dict[str, Any]) -> str: ...

    def events(self) -> AsyncIterator[AttestationEvent]: ...

    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[], Awaitable[AttestationSession]]

_CLOSED = object()


def signing_key(seed: str) -> ed25519.Ed25519PrivateKey:
    raw = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"zkmeasure attestation account",
    ).derive(seed.encode("utf-8"))
    return ed25519.Ed25519PrivateKey.from_private_bytes(raw)


def auth_message(account: str, nonce: str) -> bytes:
    return f"zkmeasure-auth:{account}:{nonce}".encode("utf-8")


def derive_credentials(seed: str, nonce: str) -> Dict[str, str]:
    """Account (public key) and nonce signature for ``session_authenticate``."""
    key = signing_key(seed)
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )
    account = "0x" + public.hex()
    signature = key.sign(auth_message(account, nonce))
    return {"account": account, "nonce": nonce, "signature": "0x" + signature.hex()}


class WsAttestationSession:
    def __init__(self, url: str, *, connect_timeout: float = 15.0, request_timeout: float = 30.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._ws: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ids = count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._subscription: Optional[str] = None
        self._closing = False

    # ------------- lifecycle -------------------

    async def connect(self) -> None:
        self._ws = await asyncio.wait_for(
            connect(
                self.url,
                additional_headers={"User-Agent": f"zkmeasure/{__version__}"},
                open_timeout=self.connect_timeout,
            ),
            timeout=self.connect_timeout,
        )
        self._reader_task = asyncio.create_task(self._reader_loop(), name="attestation.reader")

    async def authenticate(self, seed: str) -> None:
        creds = derive_credentials(seed, secrets.token_hex(16))
        ok = await self.request("session_authenticate", [creds])
        if ok is not True:
            raise AttestationRpcError(-32001, "authentication rejected", ok)
        log.debug("attestation.authenticated", account=creds["account"])

    async def close(self) -> None:
        """Unsubscribe (best effort), close the socket, fail pending requests."""
        if self._closing:
            return
        if self._subscription is not None and self._ws is not None:
            try:
                await self.request("verify_unsubscribe", [self._subscription])
            except (AttestationRpcError, ConnectionClosed, asyncio.TimeoutError) as e:
                log.debug("attestation.unsubscribe_failed", error=str(e))
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._fail_pending("session closed")
        self._events.put_nowait(_CLOSED)

    # ------------- RPC primitives --------------

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if self._ws is None or (self._reader_task is not None and self._reader_task.done()):
            raise AttestationRpcError(-32098, "session not connected")
        rid = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": rid, "method": method, "params": params or []}
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        try:
            await asyncio.wait_for(
                self._ws.send(json.dumps(payload, separators=(",", ":"))),
                timeout=self.request_timeout,
            )
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        finally:
            self._pending.pop(rid, None)

    # ------------- session API -----------------

    async def submit(self, proof: Dict[str, Any], public_signals: List[str], vk: Dict[str, Any]) -> str:
        res = await self.request(
            "verify_submitAndWatch",
            [
                {
                    "proofSystem": PROOF_SYSTEM,
                    "curve": CURVE,
                    "proof": proof,
                    "publicSignals": list(public_signals),
                    "vk": vk,
                    "waitFor": "publishedAttestation",
                }
            ],
        )
        if isinstance(res, dict) and "subscription" in res:
            res = res["subscription"]
        if res is None:
            raise AttestationRpcError(-32002, "submission returned no subscription id")
        self._subscription = str(res)
        return self._subscription

    async def events(self) -> AsyncIterator[AttestationEvent]:
        """Yield this session's verification events until the stream ends."""
        while True:
            item = await self._events.get()
            if item is _CLOSED:
                return
            sub, payload = item
            if self._subscription is not None and sub is not None and sub != self._subscription:
                continue
            yield AttestationEvent.from_wire(payload)

    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        res = await self.request("poe_proofPath", [int(attestation_id), leaf_digest])
        if not isinstance(res, dict):
            raise AttestationRpcError(-32003, "malformed proof-of-existence response", res)
        return res

    # ------------- internals --------------------

    def _fail_pending(self, reason: str) -> None:
        for fut in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(AttestationRpcError(-32098, reason))
        self._pending.clear()

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                try:
                    data = json.loads(msg)
                except (TypeError, ValueError):
                    log.warning("attestation.bad_frame")
                    continue
                if not isinstance(data, dict):
                    continue

                if "id" in data and data.get("id") is not None:
                    fut = self._pending.get(data["id"]) if isinstance(data["id"], int) else None
                    if fut is not None and not fut.done():
                        err = data.get("error")
                        if isinstance(err, dict):
                            fut.set_exception(
                                AttestationRpcError(
                                    err.get("code", -32603), err.get("message", "Unknown error"), err.get("data")
                                )
                            )
                        elif err is not None:
                            fut.set_exception(AttestationRpcError(-32603, str(err)))
                        else:
                            fut.set_result(data.get("result"))
                    continue

                if data.get("method") == "verify_event":
                    params = data.get("params") or {}
                    sub = params.get("subscription")
                    self._events.put_nowait((str(sub) if sub is not None else None, params.get("result")))
        except ConnectionClosed as e:
            if not self._closing:
                log.warning("attestation.connection_lost", code=getattr(e.rcvd, "code", None))
        finally:
            self._fail_pending("connection closed")
            self._events.put_nowait(_CLOSED)


async def open_ws_session(config: Config) -> WsAttestationSession:
    """Connect and authenticate a fresh session using the process-wide seed."""
    if not config.has_attestation_credentials:
        raise AttestationError("attestation credentials are not configured")
    assert config.attestation_seed is not None
    session = WsAttestationSession(
        config.attestation_ws_url,
        connect_timeout=config.attestation_connect_timeout_s,
        request_timeout=config.attestation_request_timeout_s,
    )
    await session.connect()
    try:
        await session.authenticate(config.attestation_seed.get_secret_value())
    except BaseException:
        await session.close()
        raise
    return session


def ws_session_factory(config: Config) -> SessionFactory:
    async def _open() -> AttestationSession:
        return await open_ws_session(config)

    return _open


__all__ = [
    "AttestationEvent",
    "AttestationRpcError",
    "AttestationSession",
    "SessionFactory",
    "WsAttestationSession",
    "auth_message",
    "derive_credentials",
    "signing_key",
    "open_ws_session",
    "ws_session_factory",
    "EVENT_INCLUDED",
    "EVENT_FINALIZED",
    "EVENT_CONFIRMED",
    "EVENT_ERROR",
]
