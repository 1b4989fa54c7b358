from __future__ import annotations

"""
Measurement pipeline (orchestrator)

Owns one supervised asyncio task per measurement, keyed by measurement id:

    Pending --> Processing --> Completed
       |            |
       +------------+-------> Failed

Key properties
--------------
- At-most-once: ``schedule()`` refuses an id that already has a live run, and
  a run only proceeds if it can move its record out of ``Pending``; the
  store's forward-only transitions make a second run a no-op.
- Stages run strictly in order within one measurement (witness, prove,
  attest); different measurements run concurrently. Proving is CPU-heavy, so
  the number of concurrent proof generations is bounded by a semaphore.
- Any ``PipelineError`` (and any unexpected exception, including a failed
  status write) ends in ``Failed``; the cause is logged and stored
  server-side only. Nothing is retried.
- Clean shutdown: ``stop()`` stops accepting work, waits up to
  ``shutdown_timeout`` for in-flight runs, then cancels the rest. A cancelled
  run is marked ``Failed`` before the cancellation propagates.
"""

import asyncio
import sqlite3
from typing import Dict, List, Optional

import structlog

from zkmeasure.errors import PipelineError, StorageError
from zkmeasure.logging import get_logger
from zkmeasure.metrics import Metrics
from zkmeasure.models.measurement import AttestationData, MeasurementStatus
from zkmeasure.services.attestation import AttestationSubmitter
from zkmeasure.services.proof import ProofGenerator, to_circuit_point
from zkmeasure.storage.sqlite import MeasurementRecord, MeasurementStore


class MeasurementPipeline:
    def __init__(
        self,
        *,
        store: MeasurementStore,
        prover: ProofGenerator,
        submitter: AttestationSubmitter,
        max_concurrent_proofs: int = 2,
        shutdown_timeout: float = 15.0,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.store = store
        self.prover = prover
        self.submitter = submitter
        self.metrics = metrics
        self.shutdown_timeout = shutdown_timeout
        self.log = get_logger(__name__).bind(role="pipeline")
        self._proving = asyncio.Semaphore(max_concurrent_proofs)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._accepting = True

    # --- supervision -----------------------------------------------------------

    @property
    def accepting(self) -> bool:
        return self._accepting

    def inflight(self) -> List[str]:
        return [mid for mid, t in self._tasks.items() if not t.done()]

    async def join(self, measurement_id: str) -> None:
        """Wait for a measurement's run to finish (no-op if it is not tracked)."""
        task = self._tasks.get(measurement_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def schedule(self, record: MeasurementRecord) -> asyncio.Task:
        """Start exactly one background run for ``record``. Returns immediately."""
        if not self._accepting:
            raise RuntimeError("pipeline is shutting down")
        if record.id in self._tasks:
            raise RuntimeError(f"measurement {record.id} already scheduled")
        task = asyncio.create_task(self._run(record), name=f"measurement-{record.id}")
        task.add_done_callback(self._on_done(record.id))
        self._tasks[record.id] = task
        return task

    def _on_done(self, measurement_id: str):
        def _cb(task: asyncio.Task) -> None:
            self._tasks.pop(measurement_id, None)
            if task.cancelled():
                self.log.info("pipeline.cancelled", measurement_id=measurement_id)
                return
            exc = task.exception()
            if exc is not None:
                self.log.error(
                    "pipeline.crashed",
                    measurement_id=measurement_id,
                    error=f"{type(exc).__name__}: {exc}",
                    exc_info=exc,
                )

        return _cb

    async def stop(self) -> None:
        self._accepting = False
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        self.log.info("pipeline.stop.begin", inflight=len(tasks))
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            self.log.warning("pipeline.stop.timeout_cancel", inflight=len(self.inflight()))
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self.log.info("pipeline.stop.finished")

    # --- one run ----------------------------------------------------------------

    async def _run(self, record: MeasurementRecord) -> None:
        mid = record.id
        structlog.contextvars.bind_contextvars(measurement_id=mid)
        log = self.log

        counted = False
        try:
            if not await self._transition(mid, MeasurementStatus.PROCESSING):
                log.warning("pipeline.skip", reason="record is not Pending")
                return
            log.info("pipeline.start", claimed_distance_mm=record.claimed_distance_mm)
            if self.metrics is not None:
                self.metrics.pipeline_inflight.inc()
                counted = True

            p1 = to_circuit_point(record.start_point)
            p2 = to_circuit_point(record.end_point)
            async with self._proving:
                artifacts = await self.prover.generate(mid, p1, p2, record.claimed_distance_mm)

            started = asyncio.get_running_loop().time()
            attestation = await self.submitter.submit(mid, artifacts.proof, artifacts.public_signals)
            if self.metrics is not None:
                self.metrics.observe_stage("attest", asyncio.get_running_loop().time() - started)

            completed = await self._transition(mid, MeasurementStatus.COMPLETED, attestation=attestation)
        except PipelineError as e:
            log.error("pipeline.failed", stage=e.stage, error=e.describe())
            await self._finish_failed(mid, e.describe())
            return
        except asyncio.CancelledError:
            log.warning("pipeline.interrupted")
            await self._finish_failed(mid, "cancelled during shutdown")
            raise
        except Exception as e:
            log.exception("pipeline.failed", stage="unexpected", error=f"{type(e).__name__}: {e}")
            await self._finish_failed(mid, f"unexpected: {type(e).__name__}: {e}")
            return
        finally:
            if counted:
                self.metrics.pipeline_inflight.dec()

        if completed:
            self._outcome(MeasurementStatus.COMPLETED)
            log.info("pipeline.completed", attestation_id=attestation.attestation_id)
        else:
            log.warning("pipeline.complete_rejected", reason="record left Processing")

    async def _transition(
        self, measurement_id: str, to: MeasurementStatus, *, attestation: Optional[AttestationData] = None
    ) -> bool:
        try:
            return await self.store.transition(measurement_id, to, attestation=attestation)
        except sqlite3.Error as e:
            raise StorageError(f"cannot record status {to.value}", measurement_id=measurement_id) from e

    async def _finish_failed(self, measurement_id: str, reason: str) -> None:
        if await self.store.transition(measurement_id, MeasurementStatus.FAILED, error=reason):
            self._outcome(MeasurementStatus.FAILED)

    def _outcome(self, status: MeasurementStatus) -> None:
        if self.metrics is not None:
            self.metrics.record_outcome(status.value)


__all__ = ["MeasurementPipeline"]
