"""
Background audit worker.

Decision log writes and counter updates run off the decision path. Jobs go
into a bounded queue; when it is full the job is dropped and counted, so an
evaluation never waits on audit storage.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.base import DecisionLogStore, PolicyStore
from ..rules.models import DecisionLogEntry


DECISION_LOG = "decision_log"
COUNTERS = "counters"


@dataclass(frozen=True)
class CounterIncrement:
    """Counter deltas for one policy."""
    evaluations: int = 0
    allows: int = 0
    denies: int = 0


@dataclass
class AuditJob:
    """One unit of background work."""
    kind: str
    run: Callable[[], Awaitable[None]]
    decision_id: Optional[str] = None


class AuditWorker:
    """Single consumer over a bounded job queue."""

    def __init__(
        self,
        log_store: DecisionLogStore,
        policy_store: PolicyStore,
        max_queue_size: int = 10000,
        write_timeout: float = 2.0,
        drain_timeout: float = 5.0,
        metrics: Optional[MetricsCollector] = None
    ):
        self.log_store = log_store
        self.policy_store = policy_store
        self.write_timeout = write_timeout
        self.drain_timeout = drain_timeout
        self.metrics = metrics
        self.logger = get_logger("policy.audit")

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.processing_task: Optional[asyncio.Task] = None
        self.running = False
        self.stats = {
            "submitted": 0,
            "processed": 0,
            "dropped": 0,
            "failed": 0,
        }

    async def start(self):
        """Start the consumer task."""
        self._ensure_started()

    def _ensure_started(self):
        if self.processing_task is not None and not self.processing_task.done():
            return
        self.running = True
        self.processing_task = asyncio.get_running_loop().create_task(self._process_queue())
        self.logger.info("Audit worker started", max_queue_size=self.queue.maxsize)

    async def stop(self):
        """Drain pending jobs for up to ``drain_timeout`` seconds, then stop."""
        if self.processing_task is None:
            return

        try:
            await asyncio.wait_for(self.queue.join(), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Audit queue not drained before shutdown",
                pending=self.queue.qsize()
            )

        self.running = False
        self.processing_task.cancel()
        try:
            await self.processing_task
        except asyncio.CancelledError:
            pass
        self.processing_task = None

        self.logger.info("Audit worker stopped", **self.stats)

    async def flush(self, timeout: Optional[float] = None):
        """Wait until every queued job has been processed."""
        self._ensure_started()
        await asyncio.wait_for(self.queue.join(), timeout=timeout)

    def submit(self, job: AuditJob) -> bool:
        """Queue a job without blocking. Returns False if it was dropped."""
        try:
            self._ensure_started()
        except RuntimeError:
            # No running loop; the job still queues and runs once one starts
            pass

        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            self.logger.warning(
                "Audit queue full, dropping job",
                kind=job.kind,
                decision_id=job.decision_id
            )
            if self.metrics:
                self.metrics.increment_counter("audit_jobs_dropped_total", kind=job.kind)
            return False

        self.stats["submitted"] += 1
        self._update_depth()
        return True

    def submit_decision(self, entry: DecisionLogEntry) -> bool:
        """Queue a decision log write."""
        return self.submit(AuditJob(
            kind=DECISION_LOG,
            run=lambda: self.log_store.append(entry),
            decision_id=entry.decision_id
        ))

    def submit_counters(
        self,
        increments: Dict[str, CounterIncrement],
        decision_id: Optional[str] = None
    ) -> bool:
        """Queue counter increments for the policies of one decision."""
        if not increments:
            return True

        async def apply():
            for policy_id, inc in increments.items():
                await self.policy_store.increment_counters(
                    policy_id,
                    evaluations=inc.evaluations,
                    allows=inc.allows,
                    denies=inc.denies
                )

        return self.submit(AuditJob(kind=COUNTERS, run=apply, decision_id=decision_id))

    async def _process_queue(self):
        """Process the job queue."""
        while self.running:
            job = await self.queue.get()
            try:
                await asyncio.wait_for(job.run(), timeout=self.write_timeout)
                self.stats["processed"] += 1
            except asyncio.TimeoutError:
                self._record_failure(job, "timeout")
            except Exception as e:
                self._record_failure(job, str(e))
            finally:
                self.queue.task_done()
                self._update_depth()

    def _record_failure(self, job: AuditJob, error: str):
        self.stats["failed"] += 1
        self.logger.error(
            "Audit job failed",
            kind=job.kind,
            decision_id=job.decision_id,
            error=error
        )
        if self.metrics:
            self.metrics.increment_counter("audit_write_failures_total", kind=job.kind)

    def _update_depth(self):
        if self.metrics:
            self.metrics.set_gauge("audit_queue_depth", self.queue.qsize())

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "pending": self.queue.qsize(),
            "running": self.processing_task is not None and not self.processing_task.done(),
        }
