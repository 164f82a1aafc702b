"""
Reconciliation sweep.

Cross-store writes are never atomic. Each memory carries its own completion
flags, and this sweep re-drives whatever is incomplete:

- pending-enrichment memories  -> enrich job
- enriched memories with a missing vector/graph leg -> index job, until
  ``index_max_attempts`` is reached, then reported as a consistency gap
- tombstoned memories not yet purged -> purge job

It runs once at startup (rebuilding the in-memory queue after a restart),
periodically through APScheduler, and on demand from the operator surface.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mnemo.config.settings import Settings
from mnemo.core.exceptions import ConsistencyGapError, MnemoError
from mnemo.models.schemas import MemoryStatus, SweepReport, utcnow
from mnemo.pipeline.jobs import JobKind, JobQueue
from mnemo.storage.selector import ConnectionCell

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "mnemo_reconcile"


class ReconciliationSweep:
    """
    Periodic re-drive of incomplete memories.

    Usage:
        sweep = ReconciliationSweep(cell, queue, settings, vector_enabled=True, graph_enabled=False)
        await sweep.start()
        report = await sweep.sweep()
        sweep.stop()
    """

    def __init__(
        self,
        cell: ConnectionCell,
        queue: JobQueue,
        settings: Settings,
        vector_enabled: bool = False,
        graph_enabled: bool = False,
    ) -> None:
        self._cell = cell
        self._queue = queue
        self._settings = settings
        self._vector_enabled = vector_enabled
        self._graph_enabled = graph_enabled
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._gaps: list[ConsistencyGapError] = []
        self.last_report: Optional[SweepReport] = None

    @property
    def gaps(self) -> list[ConsistencyGapError]:
        """Consistency gaps found by the most recent sweep."""
        return list(self._gaps)

    async def start(self) -> None:
        """Run one sweep now, then schedule the periodic sweep."""
        await self.sweep()
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self._settings.reconcile_interval_seconds),
            id=SWEEP_JOB_ID,
            name="mnemo: reconciliation sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("reconciler_started", interval_seconds=self._settings.reconcile_interval_seconds)

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("reconciler_stopped")

    def _missing_legs(self, vector_indexed: bool, graph_indexed: bool) -> list[str]:
        legs = []
        if self._vector_enabled and not vector_indexed:
            legs.append("vector")
        if self._graph_enabled and not graph_indexed:
            legs.append("graph")
        return legs

    async def sweep(self) -> SweepReport:
        """Scan incomplete memories and re-enqueue them. Never raises."""
        report = SweepReport()
        max_attempts = self._settings.index_max_attempts
        try:
            async with self._cell.use() as store:
                candidates = await store.list_reconcilable(
                    limit=self._settings.reconcile_batch_limit,
                    check_vector=self._vector_enabled,
                    check_graph=self._graph_enabled,
                    max_index_attempts=max_attempts,
                )
                gap_memories = await store.list_index_gaps(
                    max_attempts,
                    check_vector=self._vector_enabled,
                    check_graph=self._graph_enabled,
                )
        except MnemoError as e:
            report.error = e.message
            report.finished_at = utcnow()
            self.last_report = report
            logger.error("reconcile_sweep_failed", error=e.message)
            return report

        queued_enrich = self._queue.queued_ids([JobKind.ENRICH])
        queued_index = self._queue.queued_ids([JobKind.ENRICH, JobKind.INDEX])
        queued_purge = self._queue.queued_ids([JobKind.PURGE])

        report.scanned = len(candidates)
        for memory in candidates:
            if memory.deleted:
                if memory.id not in queued_purge:
                    await self._queue.enqueue([memory.id], JobKind.PURGE)
                    report.purge_enqueued += 1
            elif memory.status == MemoryStatus.PENDING:
                if memory.id not in queued_enrich:
                    await self._queue.enqueue([memory.id], JobKind.ENRICH)
                    report.enrich_enqueued += 1
            elif memory.index_attempts < max_attempts:
                if memory.id not in queued_index:
                    await self._queue.enqueue([memory.id], JobKind.INDEX)
                    report.index_enqueued += 1

        self._gaps = []
        for memory in gap_memories:
            gap = ConsistencyGapError(memory.id, self._missing_legs(memory.vector_indexed, memory.graph_indexed))
            self._gaps.append(gap)
            logger.warning("consistency_gap", memory_id=memory.id, missing_legs=gap.missing_legs)
        report.consistency_gaps = [gap.memory_id for gap in self._gaps]

        report.finished_at = utcnow()
        self.last_report = report
        logger.info(
            "reconcile_sweep_completed",
            scanned=report.scanned,
            enrich_enqueued=report.enrich_enqueued,
            index_enqueued=report.index_enqueued,
            purge_enqueued=report.purge_enqueued,
            consistency_gaps=len(report.consistency_gaps),
        )
        return report
