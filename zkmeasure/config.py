from __future__ import annotations

"""
Configuration loader for zkmeasure services.

- Reads environment variables (optionally from `.env`) via pydantic-settings.
- The resulting `Config` is frozen: it is built once at startup and handed to
  the app, the artifact store, the prover, the attestation submitter and the
  pipeline. Nothing mutates it afterwards.
- Exposes a cached `load_config()` accessor.

Environment variables (high-level):
    HOST / PORT                   (str / int, default 0.0.0.0 / 3001)
    LOG_LEVEL                     (str, default "INFO")
    LOG_FORMAT                    ("json" | "console", default "json")

Storage:
    STORAGE_DIR                   (path, default "./.zkmeasure")
    DB_PATH                       (path, default "$STORAGE_DIR/measurements.sqlite3")
    MAX_IMAGE_BYTES               (int, default 10 MiB)

Proving toolchain:
    NODE_BIN                      (str, default "node")
    SNARKJS_BIN                   (str, default "npx snarkjs"; split shell-style)
    WITNESS_SCRIPT                (path to generate_witness.js)
    CIRCUIT_WASM                  (path to compiled circuit)
    PROVING_KEY                   (path to Groth16 .zkey)
    VERIFICATION_KEY              (path to verification_key.json)
    PROVING_TIMEOUT_S             (float, default 300)
    MAX_CONCURRENT_PROOFS         (int, default 2)

Attestation network:
    ATTESTATION_WS_URL            (str, WebSocket JSON-RPC endpoint)
    ATTESTATION_SEED              (secret; never logged)
    ATTESTATION_CONNECT_TIMEOUT_S (float, default 15)
    ATTESTATION_REQUEST_TIMEOUT_S (float, default 30)
    ATTESTATION_TIMEOUT_S         (float, default 900); bound on the wait for
                                  the attestation-confirmed event

HTTP:
    CORS_ALLOW_ORIGINS            (csv|json list, default "*")
    SHUTDOWN_TIMEOUT_S            (float, default 15)

Notes
-----
- Lists accept comma-separated strings or JSON arrays.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(val: Optional[str | List[str]], *, default: List[str]) -> List[str]:
    if val is None:
        return list(default)
    if isinstance(val, list):
        return [str(x) for x in val]
    s = val.strip()
    if not s:
        return []
    if s.startswith("[") and s.endswith("]"):
        try:
            return [str(x) for x in json.loads(s)]
        except json.JSONDecodeError:
            pass
    return [x.strip() for x in s.split(",") if x.strip()]


class Config(BaseSettings):
    # Server
    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(3001, ge=1, le=65535, description="Listen port")
    log_level: str = Field("INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_format: str = Field("json", description='"json" or "console"')

    # Storage
    storage_dir: Path = Field(Path("./.zkmeasure"), description="Artifact storage root")
    db_path: Optional[Path] = Field(None, description="SQLite file for measurement records")
    max_image_bytes: int = Field(10 * 1024 * 1024, gt=0, description="Upper bound on uploaded image size")

    # Proving toolchain
    node_bin: str = Field("node", description="Node.js executable used for witness generation")
    snarkjs_bin: str = Field("npx snarkjs", description="snarkjs command line (shell-split)")
    witness_script: Path = Field(Path("zk/circuit_js/generate_witness.js"))
    circuit_wasm: Path = Field(Path("zk/circuit_js/distance.wasm"))
    proving_key: Path = Field(Path("zk/keys/distance_final.zkey"))
    verification_key: Path = Field(Path("zk/keys/verification_key.json"))
    proving_timeout_s: float = Field(300.0, gt=0)
    max_concurrent_proofs: int = Field(2, ge=1)

    # Attestation network
    attestation_ws_url: str = Field("ws://127.0.0.1:9944", description="Attestation network WebSocket JSON-RPC endpoint")
    attestation_seed: Optional[SecretStr] = Field(None, description="Account seed for the attestation network")
    attestation_connect_timeout_s: float = Field(15.0, gt=0)
    attestation_request_timeout_s: float = Field(30.0, gt=0)
    attestation_timeout_s: float = Field(900.0, gt=0)

    # HTTP
    cors_allow_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["*"])
    shutdown_timeout_s: float = Field(15.0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", case_sensitive=False, extra="ignore", frozen=True
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _coerce_list(cls, v):
        return _parse_list(v, default=["*"])

    @field_validator("log_format", mode="after")
    @classmethod
    def _check_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError('LOG_FORMAT must be "json" or "console"')
        return v

    # Derived values ---------------------------------------------------------

    @property
    def database_path(self) -> Path:
        return self.db_path if self.db_path is not None else self.storage_dir / "measurements.sqlite3"

    @property
    def has_attestation_credentials(self) -> bool:
        return self.attestation_seed is not None and bool(self.attestation_seed.get_secret_value())


@lru_cache(maxsize=1)
def load_config() -> Config:
    """Return the process-wide configuration (read once, cached)."""
    return Config()  # type: ignore[call-arg]


__all__ = ["Config", "load_config"]
