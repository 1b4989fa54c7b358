"""
zkmeasure services
==================

FastAPI backend that turns an AR distance measurement into a Groth16 proof
and an attestation on a remote verification network.

This package exposes:

- ``__version__``: semantic version string
- ``build_app()``: convenience creator for a configured FastAPI app

Prefer importing submodules directly for specific concerns:
``zkmeasure.config``, ``zkmeasure.logging``, ``zkmeasure.tasks.pipeline``, etc.
"""

from __future__ import annotations

from .version import __version__

__all__ = ["__version__", "build_app"]


def build_app():
    """
    Create and return a fully configured FastAPI application.

    Importing lazily avoids importing FastAPI (and related deps) when
    consumers only need version metadata.
    """
    from .app import create_app

    return create_app()
