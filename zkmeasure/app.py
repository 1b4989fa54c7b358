from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .adapters.attestation_ws import SessionFactory, ws_session_factory
from .adapters.snarkjs import SnarkjsToolchain
from .config import Config, load_config
from .logging import get_logger, setup_logging
from .metrics import setup_metrics
from .middleware.errors import install_error_handlers
from .middleware.request_id import install_request_id_middleware
from .routers.health import router as health_router
from .routers.measurements import router as measurements_router
from .services.attestation import AttestationSubmitter
from .services.proof import ProofGenerator, Toolchain, load_verification_key
from .storage.fs import ArtifactStore
from .storage.sqlite import MeasurementStore
from .tasks.pipeline import MeasurementPipeline
from .version import __version__

log = get_logger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    App lifespan: open the DB, fail records orphaned by a previous process,
    start the pipeline; on shutdown drain the pipeline and close the DB.
    """
    state = app.state
    cfg: Config = state.config

    state.artifacts.ensure_root()
    await state.store.connect()
    orphans = await state.store.recover_orphans()
    if orphans:
        log.warning("startup.orphans_failed", count=len(orphans), measurement_ids=orphans)

    try:
        state.verification_key = load_verification_key(cfg.verification_key)
    except (OSError, ValueError) as e:
        # readyz reports it; every attestation fails until it is fixed
        log.error("startup.verification_key_unavailable", path=str(cfg.verification_key), error=str(e))
        state.verification_key = None

    state.pipeline = MeasurementPipeline(
        store=state.store,
        prover=ProofGenerator(state.artifacts, state.toolchain, metrics=state.metrics),
        submitter=AttestationSubmitter(
            state.artifacts,
            state.verification_key,
            state.attestation_sessions,
            confirmation_timeout_s=cfg.attestation_timeout_s,
        ),
        max_concurrent_proofs=cfg.max_concurrent_proofs,
        shutdown_timeout=cfg.shutdown_timeout_s,
        metrics=state.metrics,
    )
    log.info(
        "startup.ready",
        storage_dir=str(state.artifacts.root),
        db=state.store.db_path,
        attestation_url=cfg.attestation_ws_url,
    )

    try:
        yield
    finally:
        await state.pipeline.stop()
        await state.store.close()
        log.info("shutdown.complete")


def create_app(
    config: Optional[Config] = None,
    *,
    toolchain: Optional[Toolchain] = None,
    attestation_sessions: Optional[SessionFactory] = None,
) -> FastAPI:
    """
    FastAPI factory. ``toolchain`` and ``attestation_sessions`` replace the
    snarkjs processes and the WebSocket sessions (used by tests and local runs).
    """
    cfg = config or load_config()
    setup_logging(level=cfg.log_level, log_format=cfg.log_format)

    app = FastAPI(title="zkmeasure", version=__version__, lifespan=_lifespan)
    app.state.config = cfg
    app.state.artifacts = ArtifactStore(cfg.storage_dir)
    app.state.store = MeasurementStore(cfg.database_path)
    app.state.toolchain = toolchain or SnarkjsToolchain(cfg)
    app.state.attestation_sessions = attestation_sessions or ws_session_factory(cfg)
    app.state.attestation_configured = attestation_sessions is not None or cfg.has_attestation_credentials
    app.state.verification_key = None

    install_request_id_middleware(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    install_error_handlers(app)
    setup_metrics(app, service_version=__version__)

    app.include_router(health_router)
    app.include_router(measurements_router)
    return app
