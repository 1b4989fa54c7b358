"""
Adapters for the external systems a measurement passes through.

- snarkjs          : circom witness generator + snarkjs Groth16 prover (child processes)
- attestation_ws   : WebSocket JSON-RPC session against the attestation network

Submodules are loaded lazily via PEP 562 (__getattr__) so that importing the
package does not pull in the websockets client.
"""

from __future__ import annotations

import importlib

__all__ = ["snarkjs", "attestation_ws"]


def __getattr__(name: str):
    if name in __all__:
        return importlib.import_module(f".{name}", __name__)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
