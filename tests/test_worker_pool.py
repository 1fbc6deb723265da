"""
End-to-end tests for the worker pool against a real store: lease, dispatch,
completion, retries, terminal failures and the concurrency bound.
"""

import asyncio

import pytest

from marketplace_jobs.domain.errors import BusinessLogicError
from marketplace_jobs.domain.models import JobResult
from marketplace_jobs.domain.queues import QueueName
from marketplace_jobs.domain.retry import RetryPolicy
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.queues.registry import EnqueueOptions
from marketplace_jobs.workers.config import RateLimit, WorkerConfig
from marketplace_jobs.workers.dispatch import Dispatcher, merge_processors
from marketplace_jobs.workers.maintenance import build_maintenance_processors
from marketplace_jobs.workers.pool import WorkerPool

FAST_RETRY = RetryPolicy(attempts=3, backoff_type="fixed", delay_seconds=0, jitter=False)
DONE = (JobStatus.COMPLETED, JobStatus.FAILED)


def site_config(concurrency: int = 1, rate_limit=None, timeout: float = 5) -> WorkerConfig:
    return WorkerConfig(
        queue=QueueName.SITE,
        concurrency=concurrency,
        rate_limit=rate_limit,
        retry_policy=FAST_RETRY,
        timeout_seconds=timeout,
    )


@pytest.fixture
def make_pool(session_factory):
    def _make_pool(processors, config=None, shutdown_grace=1) -> WorkerPool:
        pool = WorkerPool(
            [config or site_config()],
            Dispatcher(processors),
            session_factory,
            worker_id="test-worker",
            poll_interval=0.02,
            shutdown_grace=shutdown_grace,
        )
        return pool

    return _make_pool


# -----------------------------------------------------------------------------
# Test Cases: Job lifecycle
# -----------------------------------------------------------------------------
class TestJobLifecycle:
    """Tests for a job travelling from enqueue to a terminal status."""

    @pytest.mark.asyncio
    async def test_site_create_completes(self, registry, make_pool, wait_for_status, load_entry):
        seen = []

        async def create_site(job):
            seen.append(job)
            return JobResult(success=True, message="Site created", data={"siteId": "s1"})

        handle = await registry.enqueue("site", "SITE_CREATE", {"name": "Rome Food Tours"})
        pool = make_pool({"site": {"SITE_CREATE": create_site}})
        await pool.start()
        job = await wait_for_status(handle.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.result["data"]["siteId"] == "s1"
        assert job.completed_at is not None
        assert seen[0].data.name == "Rome Food Tours"
        assert (await load_entry(handle.job_id)).state == EntryState.COMPLETED

    @pytest.mark.asyncio
    async def test_sync_handler_and_plain_return_value(self, registry, make_pool, wait_for_status):
        def health_check(job):
            return {"healthy": True}

        handle = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": health_check}})
        await pool.start()
        job = await wait_for_status(handle.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.result["data"] == {"healthy": True}

    @pytest.mark.asyncio
    async def test_retries_until_attempts_exhausted(self, registry, make_pool, wait_for_status, load_entry):
        calls = []

        async def flaky(job):
            calls.append(job.attempts_made)
            raise RuntimeError("upstream exploded")

        handle = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": flaky}})
        await pool.start()
        job = await wait_for_status(handle.job_id, JobStatus.FAILED)
        await pool.stop()

        assert job.status == JobStatus.FAILED
        assert job.attempts == job.max_attempts == 3
        assert calls == [1, 2, 3]
        assert "upstream exploded" in job.error
        assert (await load_entry(handle.job_id)).state == EntryState.FAILED

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self, registry, make_pool, wait_for_status):
        async def second_time_lucky(job):
            if job.attempts_made == 1:
                raise ConnectionError("network unreachable")
            return JobResult(success=True)

        handle = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": second_time_lucky}})
        await pool.start()
        job = await wait_for_status(handle.job_id, JobStatus.COMPLETED)
        await pool.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 2
        assert job.error is None

    @pytest.mark.asyncio
    async def test_permanent_error_skips_retries(self, registry, make_pool, wait_for_status):
        async def reject(job):
            raise BusinessLogicError("Opportunity already has a site")

        handle = await registry.enqueue("site", "SITE_CREATE", {"opportunityId": "o1"})
        pool = make_pool({"site": {"SITE_CREATE": reject}})
        await pool.start()
        job = await wait_for_status(handle.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.error_category == "BUSINESS_LOGIC"

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_without_retry(self, registry, make_pool, wait_for_status):
        handle = await registry.enqueue("site", "SITE_TELEPORT", {"siteId": "s1"})
        pool = make_pool({"site": {}})
        await pool.start()
        job = await wait_for_status(handle.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.error_category == "unknown_job_type"

    @pytest.mark.asyncio
    async def test_handler_timeout_counts_as_failed_attempt(self, registry, make_pool, wait_for_status):
        async def hang(job):
            await asyncio.sleep(10)

        handle = await registry.enqueue(
            "site", "PIPELINE_HEALTH_CHECK", {}, EnqueueOptions(attempts=1)
        )
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": hang}}, site_config(timeout=0.1))
        await pool.start()
        job = await wait_for_status(handle.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.FAILED
        assert "timeout" in job.error.lower()


# -----------------------------------------------------------------------------
# Test Cases: Throughput controls
# -----------------------------------------------------------------------------
class TestThroughputControls:
    """Tests for the per-queue concurrency and rate limits."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, registry, make_pool, wait_for_status):
        running = 0
        peak = 0

        async def slow(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.1)
            running -= 1
            return JobResult(success=True)

        handles = [await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {}) for _ in range(6)]
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": slow}}, site_config(concurrency=2))
        await pool.start()
        jobs = [await wait_for_status(h.job_id, *DONE, timeout=10) for h in handles]
        await pool.stop()

        assert all(job.status == JobStatus.COMPLETED for job in jobs)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_rate_limit_caps_dequeues(self, registry, make_pool, load_job):
        async def quick(job):
            return JobResult(success=True)

        handles = [await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {}) for _ in range(4)]
        pool = make_pool(
            {"site": {"PIPELINE_HEALTH_CHECK": quick}},
            site_config(concurrency=4, rate_limit=RateLimit(max_jobs=2, per_seconds=60)),
        )
        await pool.start()
        await asyncio.sleep(0.5)
        await pool.stop()

        statuses = [(await load_job(h.job_id)).status for h in handles]
        assert statuses.count(JobStatus.COMPLETED) == 2
        assert statuses.count(JobStatus.PENDING) == 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_jobs(self, registry, make_pool, wait_for_status, load_job):
        started = asyncio.Event()

        async def slow(job):
            started.set()
            await asyncio.sleep(0.2)
            return JobResult(success=True)

        handle = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": slow}})
        await pool.start()
        await asyncio.wait_for(started.wait(), timeout=5)
        await pool.stop()

        assert pool.inflight == 0
        assert (await load_job(handle.job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_jobs_past_grace_are_left_running(self, registry, make_pool, load_job, load_entry):
        """Abandoned jobs stay RUNNING so the stuck detector can reclaim them."""
        started = asyncio.Event()

        async def hang(job):
            started.set()
            await asyncio.sleep(30)
            return JobResult(success=True)

        handle = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        pool = make_pool({"site": {"PIPELINE_HEALTH_CHECK": hang}}, shutdown_grace=0.2)
        await pool.start()
        await asyncio.wait_for(started.wait(), timeout=5)
        await asyncio.wait_for(pool.stop(), timeout=5)

        job = await load_job(handle.job_id)
        assert pool.inflight == 0
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert job.completed_at is None
        assert (await load_entry(handle.job_id)).state == EntryState.ACTIVE


# -----------------------------------------------------------------------------
# Test Cases: Built-in maintenance
# -----------------------------------------------------------------------------
class TestMaintenanceHandlers:
    """Tests for handlers the worker process registers by default."""

    @pytest.mark.asyncio
    async def test_queue_cleanup_trims_finished_entries(self, registry, make_pool, wait_for_status, load_entry):
        def health_check(job):
            return {"healthy": True}

        processors = merge_processors(
            build_maintenance_processors(registry),
            {"site": {"PIPELINE_HEALTH_CHECK": health_check}},
        )
        pool = make_pool(processors)
        await pool.start()

        finished = await registry.enqueue("site", "PIPELINE_HEALTH_CHECK", {})
        await wait_for_status(finished.job_id, *DONE)
        cleanup = await registry.enqueue("site", "QUEUE_CLEANUP", {"completedMaxAge": 0})
        job = await wait_for_status(cleanup.job_id, *DONE)
        await pool.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.result["data"]["jobs_removed"] >= 1
        assert await load_entry(finished.job_id) is None
