"""Unit tests for the in-memory enrichment job queue."""

import asyncio

import pytest

from mnemo.pipeline.jobs import JobKind, JobQueue, JobState


class TestEnqueue:
    """Enqueue and supersession rules."""

    @pytest.fixture
    def queue(self):
        return JobQueue(max_attempts=3, backoff_base=0.01, backoff_max=0.05)

    @pytest.mark.asyncio
    async def test_enqueue_creates_queued_job(self, queue):
        job = await queue.enqueue(["m1"], JobKind.ENRICH)

        assert job.state == JobState.QUEUED
        assert job.memory_ids == ["m1"]
        assert queue.depth == 1

    @pytest.mark.asyncio
    async def test_enqueue_rejects_empty_ids(self, queue):
        with pytest.raises(ValueError):
            await queue.enqueue([], JobKind.ENRICH)

    @pytest.mark.asyncio
    async def test_enqueue_dedupes_ids(self, queue):
        job = await queue.enqueue(["m1", "m1", "m2"])

        assert job.memory_ids == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_newer_job_supersedes_queued_job_for_same_id(self, queue):
        first = await queue.enqueue(["m1"], JobKind.ENRICH)
        second = await queue.enqueue(["m1"], JobKind.ENRICH)

        assert first.state == JobState.CANCELLED
        assert second.state == JobState.QUEUED
        assert queue.depth == 1
        assert queue.counts_by_state()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_partial_overlap_only_removes_shared_ids(self, queue):
        first = await queue.enqueue(["m1", "m2"], JobKind.ENRICH)
        await queue.enqueue(["m2"], JobKind.ENRICH)

        assert first.state == JobState.QUEUED
        assert first.memory_ids == ["m1"]
        assert queue.depth == 2

    @pytest.mark.asyncio
    async def test_purge_supersedes_enrich_but_index_does_not(self, queue):
        enrich = await queue.enqueue(["m1"], JobKind.ENRICH)
        await queue.enqueue(["m1"], JobKind.INDEX)
        assert enrich.state == JobState.QUEUED
        assert queue.depth == 2

        await queue.enqueue(["m1"], JobKind.PURGE)
        assert enrich.state == JobState.CANCELLED
        assert queue.depth == 1

    @pytest.mark.asyncio
    async def test_queued_ids_filters_by_kind(self, queue):
        await queue.enqueue(["m1"], JobKind.ENRICH)
        await queue.enqueue(["m2"], JobKind.PURGE)

        assert queue.queued_ids([JobKind.ENRICH]) == {"m1"}
        assert queue.queued_ids() == {"m1", "m2"}

    @pytest.mark.asyncio
    async def test_enqueue_after_close_raises(self, queue):
        await queue.close()

        with pytest.raises(RuntimeError):
            await queue.enqueue(["m1"])


class TestBatching:
    """next_batch grouping, windows and per-id ordering."""

    @pytest.fixture
    def queue(self):
        return JobQueue(max_attempts=3, backoff_base=0.01, backoff_max=0.05)

    @pytest.mark.asyncio
    async def test_batch_respects_size(self, queue):
        for memory_id in ("m1", "m2", "m3"):
            await queue.enqueue([memory_id])

        first = await queue.next_batch(batch_size=2, window=0)
        second = await queue.next_batch(batch_size=2, window=0)

        assert [job.memory_ids for job in first] == [["m1"], ["m2"]]
        assert [job.memory_ids for job in second] == [["m3"]]
        assert all(job.state == JobState.RUNNING for job in first + second)
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_batch_holds_one_kind(self, queue):
        await queue.enqueue(["m1"], JobKind.ENRICH)
        await queue.enqueue(["m2"], JobKind.PURGE)
        await queue.enqueue(["m3"], JobKind.ENRICH)

        batch = await queue.next_batch(batch_size=8, window=0)

        assert {job.kind for job in batch} == {JobKind.ENRICH}
        assert [job.memory_ids[0] for job in batch] == ["m1", "m3"]

    @pytest.mark.asyncio
    async def test_window_collects_late_arrivals(self, queue):
        await queue.enqueue(["m1"])

        async def late_enqueue():
            await asyncio.sleep(0.05)
            await queue.enqueue(["m2"])

        producer = asyncio.create_task(late_enqueue())
        batch = await queue.next_batch(batch_size=2, window=1.0)
        await producer

        assert [job.memory_ids[0] for job in batch] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_in_flight_id_is_not_dispatched_twice(self, queue):
        await queue.enqueue(["m1"])
        running = await queue.next_batch(batch_size=8, window=0)
        newer = await queue.enqueue(["m1"])

        # The running job is never cancelled by the newer one
        assert running[0].state == JobState.RUNNING

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.next_batch(batch_size=8, window=0), timeout=0.1)

        await queue.complete(running[0])
        batch = await asyncio.wait_for(queue.next_batch(batch_size=8, window=0), timeout=1.0)

        assert batch == [newer]

    @pytest.mark.asyncio
    async def test_later_job_for_blocked_id_does_not_jump_ahead(self, queue):
        await queue.enqueue(["m1"])
        running = await queue.next_batch(batch_size=8, window=0)
        await queue.enqueue(["m1", "m2"])
        await queue.enqueue(["m3"])

        batch = await queue.next_batch(batch_size=8, window=0)

        # m2 rides with the blocked m1 job, so only m3 can go
        assert [job.memory_ids for job in batch] == [["m3"]]
        await queue.complete(running[0])

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_consumer(self, queue):
        consumer = asyncio.create_task(queue.next_batch(batch_size=8, window=0))
        await asyncio.sleep(0.01)
        await queue.close()

        assert await asyncio.wait_for(consumer, timeout=1.0) == []


class TestRetry:
    """Failure handling, backoff and the attempt cap."""

    @pytest.fixture
    def queue(self):
        return JobQueue(max_attempts=2, backoff_base=0.01, backoff_max=0.02)

    def test_backoff_is_exponential_and_capped(self):
        queue = JobQueue(backoff_base=1.0, backoff_max=5.0)

        assert [queue.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_retryable_failure_requeues_with_backoff(self, queue):
        await queue.enqueue(["m1"])
        [job] = await queue.next_batch(batch_size=8, window=0)

        state = await queue.fail(job, "provider timed out", retryable=True)

        assert state == JobState.RETRYING
        assert job.last_error == "provider timed out"
        assert queue.depth == 1

        [retried] = await asyncio.wait_for(queue.next_batch(batch_size=8, window=0), timeout=1.0)
        assert retried is job
        assert retried.attempts == 2

    @pytest.mark.asyncio
    async def test_attempt_cap_fails_permanently(self, queue):
        await queue.enqueue(["m1"])
        for _ in range(2):
            [job] = await asyncio.wait_for(queue.next_batch(batch_size=8, window=0), timeout=1.0)
            state = await queue.fail(job, "boom", retryable=True)

        assert state == JobState.FAILED
        assert queue.depth == 0
        assert queue.counts_by_state()["failed"] == 1
        assert queue.recent(JobState.FAILED) == [job]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_final(self, queue):
        await queue.enqueue(["m1"])
        [job] = await queue.next_batch(batch_size=8, window=0)

        state = await queue.fail(job, "bad input", retryable=False)

        assert state == JobState.FAILED
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_retry_skips_completed_ids(self, queue):
        await queue.enqueue(["m1", "m2"])
        [job] = await queue.next_batch(batch_size=8, window=0)
        job.completed_ids.add("m1")

        await queue.fail(job, "m2 failed", retryable=True)

        assert job.pending_ids == ["m2"]
        assert queue.queued_ids() == {"m2"}

    @pytest.mark.asyncio
    async def test_complete_records_success(self, queue):
        await queue.enqueue(["m1"])
        [job] = await queue.next_batch(batch_size=8, window=0)

        await queue.complete(job)

        counts = queue.counts_by_state()
        assert job.state == JobState.SUCCEEDED
        assert counts["succeeded"] == 1
        assert counts["running"] == 0
