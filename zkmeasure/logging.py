from __future__ import annotations

"""
Structured logging setup for zkmeasure services.

Configures **structlog** + the stdlib ``logging`` package so that:
- All logs (including uvicorn) are emitted as structured JSON by default, or
  through the pretty console renderer in development.
- Context variables (request id, measurement id) are merged into each event.
- Secrets (the attestation seed, bearer tokens) are redacted by key.

Quick start
-----------
    from zkmeasure.logging import setup_logging, get_logger

    setup_logging(level="INFO", log_format="json")  # once, on process start
    log = get_logger(__name__)
    log.info("pipeline.start", measurement_id=mid)
"""

import logging
import os
from typing import Any, Dict, Iterable, Optional

import structlog
from structlog.contextvars import merge_contextvars
from structlog.processors import JSONRenderer

SERVICE_NAME = "zkmeasure"

REDACT_KEYS = {"authorization", "token", "secret", "seed", "attestation_seed", "signature", "password"}


def _redact_secrets(_: logging.Logger, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k in list(event_dict.keys()):
        if k.lower() in REDACT_KEYS and event_dict[k] is not None:
            event_dict[k] = "***"
    return event_dict


def _ensure_service(_: logging.Logger, __: str, ev: Dict[str, Any]) -> Dict[str, Any]:
    ev.setdefault("service", SERVICE_NAME)
    return ev


def _base_processors(include_stacktrace: bool) -> Iterable:
    yield structlog.stdlib.add_log_level
    yield structlog.processors.TimeStamper(fmt="iso", utc=True)
    yield merge_contextvars
    yield structlog.processors.StackInfoRenderer()
    if include_stacktrace:
        yield structlog.processors.format_exc_info
    yield _redact_secrets
    yield structlog.processors.UnicodeDecoder()
    yield _ensure_service


def setup_logging(
    *,
    level: Optional[str | int] = None,
    log_format: Optional[str] = None,
) -> None:
    """
    Configure structlog + stdlib logging. Safe to call more than once; the
    root handler is replaced rather than duplicated.

    ``level`` defaults to $LOG_LEVEL or INFO, ``log_format`` to $LOG_FORMAT or
    "json". Stack traces are rendered into the event for JSON output only.
    """
    level = level or os.getenv("LOG_LEVEL", "").upper() or "INFO"
    log_format = (log_format or os.getenv("LOG_FORMAT") or "json").lower()
    processors = list(_base_processors(include_stacktrace=log_format == "json"))

    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=True, sort_keys=False)
    else:
        renderer = JSONRenderer(sort_keys=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *processors,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *processors],
        )
    )

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.propagate = False
        lg.setLevel(level)

    logging.getLogger("asyncio").setLevel("WARNING")
    logging.getLogger("websockets").setLevel(os.getenv("LOG_LEVEL_WEBSOCKETS", "WARNING"))


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger backed by the stdlib logger ``name``."""
    return structlog.get_logger(name)


def bind_context(**kv: Any) -> None:
    """Bind key/values into the contextvars store (request or task scoped)."""
    structlog.contextvars.bind_contextvars(**kv)


def clear_context(*keys: str) -> None:
    """Clear specific keys from contextvars, or all of them if none are given."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()


__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
]
