"""
snarkjs / circom toolchain adapter.

Two external invocations, both run as child processes so proving never blocks
the event loop:

    node <WITNESS_SCRIPT> <CIRCUIT_WASM> <input.json> <witness.wtns>
    <SNARKJS_BIN> groth16 prove <PROVING_KEY> <witness.wtns> <proof.json> <public.json>

Every invocation is bounded by ``PROVING_TIMEOUT_S``; on timeout the child is
killed and reaped before the error is raised. Failures surface as
``ToolchainError`` carrying the exit code and the tail of stderr; the proof
service maps them onto the witness/prove stages.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from zkmeasure.config import Config
from zkmeasure.logging import get_logger

log = get_logger(__name__)

_STDERR_TAIL = 2000


class ToolchainError(Exception):
    """An external proving tool could not run or exited unsuccessfully."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.returncode is not None:
            base = f"{base} (exit {self.returncode})"
        if self.stderr:
            base = f"{base}: {self.stderr.strip()}"
        return base


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    elapsed_s: float


async def run_process(argv: Sequence[str], *, timeout_s: float, cwd: Optional[Path] = None) -> ProcessResult:
    """Run ``argv`` to completion, killing it if it outlives ``timeout_s``."""
    t0 = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as e:
        raise ToolchainError(f"cannot start {argv[0]!r}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise ToolchainError(f"{argv[0]!r} timed out after {timeout_s:.0f}s") from e
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    return ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:],
        elapsed_s=time.perf_counter() - t0,
    )


class SnarkjsToolchain:
    """Groth16 witness + proof generation through node and snarkjs."""

    def __init__(self, config: Config):
        self._node: List[str] = shlex.split(config.node_bin)
        self._snarkjs: List[str] = shlex.split(config.snarkjs_bin)
        self._witness_script = config.witness_script
        self._wasm = config.circuit_wasm
        self._zkey = config.proving_key
        self._timeout_s = config.proving_timeout_s

    def missing_artifacts(self) -> List[str]:
        """Names of the compiled circuit files that are not on disk."""
        return [
            str(p)
            for p in (self._witness_script, self._wasm, self._zkey)
            if not Path(p).is_file()
        ]

    async def _run(self, stage: str, argv: List[str]) -> ProcessResult:
        log.debug("toolchain.exec", stage=stage, argv=argv)
        res = await run_process(argv, timeout_s=self._timeout_s)
        if res.returncode != 0:
            raise ToolchainError(f"{stage} failed", returncode=res.returncode, stderr=res.stderr)
        log.info("toolchain.done", stage=stage, elapsed_s=round(res.elapsed_s, 3))
        return res

    async def compute_witness(self, input_path: Path, witness_path: Path) -> None:
        for p in (self._witness_script, self._wasm):
            if not Path(p).is_file():
                raise ToolchainError(f"compiled circuit artifact missing: {p}")
        await self._run(
            "witness",
            [*self._node, str(self._witness_script), str(self._wasm), str(input_path), str(witness_path)],
        )
        if not witness_path.is_file():
            raise ToolchainError("witness generator exited cleanly but wrote no witness")

    async def prove(self, witness_path: Path, proof_path: Path, public_path: Path) -> None:
        if not Path(self._zkey).is_file():
            raise ToolchainError(f"proving key missing: {self._zkey}")
        await self._run(
            "prove",
            [
                *self._snarkjs,
                "groth16",
                "prove",
                str(self._zkey),
                str(witness_path),
                str(proof_path),
                str(public_path),
            ],
        )
        for p in (proof_path, public_path):
            if not p.is_file():
                raise ToolchainError(f"prover exited cleanly but did not write {p.name}")


__all__ = ["SnarkjsToolchain", "ToolchainError", "ProcessResult", "run_process"]
