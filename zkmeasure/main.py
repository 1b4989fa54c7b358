"""
Uvicorn launcher for zkmeasure.

Usage:
  python -m zkmeasure.main [--host 0.0.0.0] [--port 3001] [--reload]
                           [--log-level info]

Environment overrides (if flags not provided):
  HOST, PORT, RELOAD, LOG_LEVEL

Runs a single worker: pipeline runs live in the serving process, and startup
marks any unfinished record of a previous process as Failed.
"""

from __future__ import annotations

import argparse
import os
from typing import Optional

import uvicorn

from .config import load_config


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "y", "on")


def main(argv: Optional[list[str]] = None) -> None:
    cfg = load_config()

    parser = argparse.ArgumentParser(description="Run the zkmeasure service (uvicorn)")
    parser.add_argument("--host", default=cfg.host, help="Bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=cfg.port, help="Port (default: %(default)s)")
    parser.add_argument("--reload", action="store_true", default=_env_bool("RELOAD", False), help="Enable autoreload (dev only)")
    parser.add_argument("--log-level", default=cfg.log_level.lower(), help="Log level for uvicorn (default: %(default)s)")
    parser.add_argument("--proxy-headers", action="store_true", default=True, help="Use X-Forwarded-* headers (default: on)")
    parser.add_argument("--forwarded-allow-ips", default="*", help="Comma list of trusted proxies (default: *)")
    args = parser.parse_args(argv)

    uvicorn.run(
        "zkmeasure.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        proxy_headers=args.proxy_headers,
        forwarded_allow_ips=args.forwarded_allow_ips,
        reload=args.reload,
        workers=1,
        # uvicorn's own logging config would replace the structlog handlers
        log_config=None,
    )


if __name__ == "__main__":
    main()
