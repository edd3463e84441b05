from __future__ import annotations

import asyncio
import logging
import random
from typing import Protocol

from streamguard.errors import PipelineFailure
from streamguard.events import LifecycleEvent, TenantEventBus
from streamguard.registry import UploadRecord, UploadRegistry, Verdict

logger = logging.getLogger(__name__)

REASON_ACCEPTED = "No violations detected"
REASON_FLAGGED = "Content flagged for review"
REASON_FAILED_PREFIX = "Evaluation failed"


class VerdictSource(Protocol):
    async def evaluate(self, record: UploadRecord) -> Verdict: ...


class SimulatedVerdictSource:
    """Stand-in for an external content-safety service."""

    def __init__(
        self,
        *,
        accept_ratio: float = 0.7,
        latency_s: float = 4.0,
        rng: random.Random | None = None,
    ) -> None:
        self.accept_ratio = max(0.0, min(1.0, float(accept_ratio)))
        self.latency_s = max(0.0, float(latency_s))
        self._rng = rng or random.Random()

    async def evaluate(self, record: UploadRecord) -> Verdict:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self._rng.random() < self.accept_ratio:
            return Verdict.ACCEPTED
        return Verdict.REJECTED


class ProcessingPipeline:
    """Runs the safety pass for each registered upload as its own task.

    For every record: publish ``started``, ask the verdict source (bounded by
    ``timeout_s``), swap in the terminal record, then publish ``completed``.
    The registry update always lands before the completion event goes out.
    """

    def __init__(
        self,
        *,
        registry: UploadRegistry,
        bus: TenantEventBus,
        verdict_source: VerdictSource,
        timeout_s: float = 10.0,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.verdict_source = verdict_source
        self.timeout_s = timeout_s
        self._tasks: set[asyncio.Task[UploadRecord | None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self, record: UploadRecord) -> asyncio.Task[UploadRecord | None]:
        task = asyncio.get_running_loop().create_task(self._run(record), name=f"pipeline:{record.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, record: UploadRecord) -> UploadRecord | None:
        try:
            self.bus.publish(record.tenant_id, LifecycleEvent.started(record))
            logger.info("pipeline started id=%s tenant=%s", record.id, record.tenant_id)
            try:
                verdict, reason = await self._evaluate(record)
            except asyncio.CancelledError:
                self._finish(record, Verdict.REJECTED, f"{REASON_FAILED_PREFIX}: cancelled")
                raise
            return self._finish(record, verdict, reason)
        except Exception:
            # Failures stay inside the task; the upload response has already gone out.
            logger.exception("pipeline crashed id=%s tenant=%s", record.id, record.tenant_id)
            return None

    async def _evaluate(self, record: UploadRecord) -> tuple[Verdict, str]:
        try:
            verdict = await asyncio.wait_for(self.verdict_source.evaluate(record), timeout=self.timeout_s)
        except TimeoutError:
            failure = PipelineFailure(f"timed out after {self.timeout_s:g}s")
        except Exception as exc:
            failure = PipelineFailure(f"{type(exc).__name__}: {exc}")
        else:
            if verdict is Verdict.ACCEPTED:
                return Verdict.ACCEPTED, REASON_ACCEPTED
            if verdict is Verdict.REJECTED:
                return Verdict.REJECTED, REASON_FLAGGED
            failure = PipelineFailure(f"indeterminate verdict {verdict!r}")
        logger.warning("verdict evaluation failed id=%s: %s", record.id, failure.message)
        return Verdict.REJECTED, f"{REASON_FAILED_PREFIX}: {failure.message}"

    def _finish(self, record: UploadRecord, verdict: Verdict, reason: str) -> UploadRecord:
        completed = self.registry.complete(record.id, verdict=verdict, reason=reason)
        self.bus.publish(completed.tenant_id, LifecycleEvent.completed(completed))
        logger.info("pipeline completed id=%s verdict=%s reason=%s", completed.id, completed.verdict.value, reason)
        return completed

    async def drain(self, *, timeout_s: float | None = None) -> int:
        """Wait for in-flight work; whatever is still running after the bound is cancelled."""
        pending = set(self._tasks)
        if not pending:
            return 0
        _done, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        return len(pending)
