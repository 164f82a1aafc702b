"""
In-memory enrichment job queue.

Jobs are transient. After a restart the reconciliation sweep rebuilds the
queue from memory-level status flags, so nothing here is persisted.

Ordering rules:
- A newer queued job for the same memory id supersedes the older one; a job
  left with no ids is cancelled. Running jobs are never touched.
- A memory id that is in flight is not dispatched again until its job
  finishes, and jobs for one id leave the queue in enqueue order.
"""

import asyncio
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import structlog

from mnemo.models.schemas import new_id
from mnemo.monitoring.metrics import record_job_transition, update_queue_depth

logger = structlog.get_logger(__name__)


class JobKind(str, Enum):
    """Fixed set of pipeline operations."""

    ENRICH = "enrich"
    INDEX = "index"
    PURGE = "purge"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


PENDING_STATES = (JobState.QUEUED, JobState.RETRYING)

# An enrich job re-drives the index legs, so it also supersedes queued index jobs.
SUPERSEDES: dict[JobKind, tuple[JobKind, ...]] = {
    JobKind.ENRICH: (JobKind.ENRICH, JobKind.INDEX),
    JobKind.INDEX: (JobKind.INDEX,),
    JobKind.PURGE: (JobKind.PURGE, JobKind.ENRICH, JobKind.INDEX),
}


@dataclass
class Job:
    """A unit of pipeline work over one or more memory ids."""

    kind: JobKind
    memory_ids: list[str]
    id: str = field(default_factory=new_id)
    state: JobState = JobState.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    failed_legs: dict[str, list[str]] = field(default_factory=dict)
    completed_ids: set[str] = field(default_factory=set)
    sequence: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    next_attempt_at: float = 0.0

    @property
    def pending_ids(self) -> list[str]:
        """Ids this job still has to process (retries skip completed ones)."""
        return [memory_id for memory_id in self.memory_ids if memory_id not in self.completed_ids]

    def is_ready(self, now: float) -> bool:
        return self.state in PENDING_STATES and self.next_attempt_at <= now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "memory_ids": list(self.memory_ids),
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "failed_legs": dict(self.failed_legs),
        }


class JobQueue:
    """
    Async job queue with batching, supersession and exponential backoff.

    Usage:
        queue = JobQueue(max_attempts=3, backoff_base=1.0, backoff_max=60.0)
        await queue.enqueue([memory.id], JobKind.ENRICH)

        batch = await queue.next_batch(batch_size=8, window=2.0)
        for job in batch:
            await queue.complete(job)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        history_size: int = 500,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._pending: list[Job] = []
        self._running: dict[str, Job] = {}
        self._inflight_ids: set[str] = set()
        self._history: deque[Job] = deque(maxlen=history_size)
        self._totals: Counter = Counter()
        self._sequence = 0
        self._closed = False
        self._condition = asyncio.Condition()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        """Jobs waiting to run (queued or retrying)."""
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def counts_by_state(self) -> dict[str, int]:
        """Live counts for pending/running jobs, lifetime totals for finished ones."""
        counts = {state.value: 0 for state in JobState}
        for job in self._pending:
            counts[job.state.value] += 1
        counts[JobState.RUNNING.value] = len(self._running)
        for state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED):
            counts[state.value] = self._totals[state]
        return counts

    def queued_ids(self, kinds: Iterable[JobKind] = tuple(JobKind)) -> set[str]:
        """Memory ids with a pending or running job of one of ``kinds``."""
        kinds = set(kinds)
        ids: set[str] = set()
        for job in list(self._pending) + list(self._running.values()):
            if job.kind in kinds:
                ids.update(job.pending_ids)
        return ids

    def recent(self, state: Optional[JobState] = None, limit: int = 50) -> list[Job]:
        """Most recently finished jobs, newest first."""
        jobs = [job for job in reversed(self._history) if state is None or job.state == state]
        return jobs[:limit]

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failures."""
        return min(self.backoff_base * (2 ** max(attempts - 1, 0)), self.backoff_max)

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    async def enqueue(self, memory_ids: Iterable[str], kind: JobKind = JobKind.ENRICH) -> Job:
        """Queue a job, superseding stale pending work for the same ids."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            raise ValueError("memory_ids must not be empty")
        if self._closed:
            raise RuntimeError("JobQueue is closed")

        async with self._condition:
            wanted = set(ids)
            for stale in list(self._pending):
                if stale.kind not in SUPERSEDES[kind]:
                    continue
                overlap = wanted.intersection(stale.pending_ids)
                if not overlap:
                    continue
                stale.memory_ids = [memory_id for memory_id in stale.memory_ids if memory_id not in overlap]
                if not stale.pending_ids:
                    self._pending.remove(stale)
                    self._finish(stale, JobState.CANCELLED)
                    logger.debug("job_superseded", job_id=stale.id, kind=stale.kind.value)

            self._sequence += 1
            job = Job(kind=kind, memory_ids=ids, sequence=self._sequence)
            self._pending.append(job)
            record_job_transition(kind.value, JobState.QUEUED.value)
            update_queue_depth(self.depth)
            self._condition.notify_all()

        logger.debug("job_enqueued", job_id=job.id, kind=kind.value, memory_ids=len(ids))
        return job

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def _collect(self, batch_size: int) -> list[Job]:
        """Ready jobs of one kind, in enqueue order, without breaking per-id order."""
        now = time.monotonic()
        blocked = set(self._inflight_ids)
        batch: list[Job] = []
        size = 0
        kind: Optional[JobKind] = None
        for job in self._pending:
            ids = set(job.pending_ids)
            eligible = (
                job.is_ready(now)
                and not ids & blocked
                and (kind is None or job.kind == kind)
                and (not batch or size + len(ids) <= batch_size)
            )
            blocked |= ids
            if not eligible:
                continue
            batch.append(job)
            size += len(ids)
            kind = job.kind
            if size >= batch_size:
                break
        return batch

    def _seconds_until_ready(self) -> Optional[float]:
        """Time until the next backoff expires; None means wait for a notify."""
        now = time.monotonic()
        waiting = [job.next_attempt_at for job in self._pending if job.next_attempt_at > now]
        if not waiting:
            return None
        return min(waiting) - now

    async def next_batch(self, batch_size: int, window: float) -> list[Job]:
        """
        Wait for a batch of ready jobs and mark them running.

        Blocks until at least one job is ready, then waits up to ``window``
        seconds for more until ``batch_size`` memory ids are collected.
        Returns an empty list once the queue is closed.
        """
        async with self._condition:
            while True:
                if self._closed:
                    return []
                batch = self._collect(batch_size)
                if batch:
                    break
                try:
                    await asyncio.wait_for(self._condition.wait(), self._seconds_until_ready())
                except asyncio.TimeoutError:
                    pass

            deadline = time.monotonic() + window
            while sum(len(job.pending_ids) for job in batch) < batch_size and not self._closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except asyncio.TimeoutError:
                    break
                finally:
                    batch = self._collect(batch_size) or batch

            batch = [job for job in batch if job in self._pending]
            for job in batch:
                self._pending.remove(job)
                job.state = JobState.RUNNING
                job.attempts += 1
                self._running[job.id] = job
                self._inflight_ids.update(job.pending_ids)
                record_job_transition(job.kind.value, JobState.RUNNING.value)
            update_queue_depth(self.depth)

        if batch:
            logger.debug(
                "batch_dispatched",
                kind=batch[0].kind.value,
                jobs=len(batch),
                memory_ids=sum(len(job.pending_ids) for job in batch),
            )
        return batch

    async def complete(self, job: Job) -> None:
        async with self._condition:
            self._release(job)
            self._finish(job, JobState.SUCCEEDED)
            self._condition.notify_all()
        if job.failed_legs:
            logger.warning("job_completed_with_failed_legs", job_id=job.id, failed_legs=job.failed_legs)
        else:
            logger.debug("job_succeeded", job_id=job.id, kind=job.kind.value)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> JobState:
        """
        Record a failed attempt.

        Retryable failures below the attempt cap go back to the queue with
        exponential backoff; everything else is failed permanently.
        """
        async with self._condition:
            self._release(job)
            job.last_error = error
            if retryable and job.attempts < self.max_attempts:
                delay = self.backoff_delay(job.attempts)
                job.state = JobState.RETRYING
                job.next_attempt_at = time.monotonic() + delay
                self._insert_pending(job)
                record_job_transition(job.kind.value, JobState.RETRYING.value)
                update_queue_depth(self.depth)
                logger.warning(
                    "job_retrying",
                    job_id=job.id,
                    kind=job.kind.value,
                    attempt=job.attempts,
                    delay=delay,
                    error=error,
                )
            else:
                self._finish(job, JobState.FAILED)
                logger.error(
                    "job_failed",
                    job_id=job.id,
                    kind=job.kind.value,
                    attempts=job.attempts,
                    error=error,
                )
            self._condition.notify_all()
            return job.state

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()

    # -------------------------------------------------------------------------
    # Internals (condition lock held)
    # -------------------------------------------------------------------------

    def _release(self, job: Job) -> None:
        self._running.pop(job.id, None)
        self._inflight_ids.difference_update(job.memory_ids)

    def _insert_pending(self, job: Job) -> None:
        index = len(self._pending)
        for position, other in enumerate(self._pending):
            if other.sequence > job.sequence:
                index = position
                break
        self._pending.insert(index, job)

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        self._history.append(job)
        self._totals[state] += 1
        record_job_transition(job.kind.value, state.value)
