"""
zkmeasure.services
==================

Service layer between the HTTP routers and the adapters.

Public submodules
-----------------
- proof         : circuit input preparation and Groth16 proof generation
- attestation   : submit a proof, await confirmation, fetch the inclusion proof
- measurements  : create / read measurement records for the routers

Submodules are imported lazily on first access.
"""

from __future__ import annotations

from importlib import import_module

__all__ = ["proof", "attestation", "measurements"]


def __getattr__(name: str):
    if name in __all__:
        return import_module(f".{name}", __name__)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
