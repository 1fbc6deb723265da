"""
Worker pool: one consumer loop per subscribed queue.

Each loop waits for a concurrency slot, then for a rate-limit slot, then
leases one entry. The lease commits the job as RUNNING before the handler
task is created. Idle queues sleep on the stop event for the poll interval.
"""
import asyncio
import logging
import socket
import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import JOBS_INFLIGHT, RATE_LIMIT_WAITS
from marketplace_jobs.commands.complete_job import complete_job
from marketplace_jobs.commands.fail_job import fail_job
from marketplace_jobs.commands.lease_job import lease_job
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.models import JobContext
from marketplace_jobs.settings import settings
from marketplace_jobs.workers.config import WorkerConfig
from marketplace_jobs.workers.dispatch import DispatchOutcome, Dispatcher
from marketplace_jobs.workers.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

# Back-off after an infrastructure error in a consumer loop
ERROR_BACKOFF_SECONDS = 5.0

def default_worker_id() -> str:
    return settings.WORKER_ID or f"{socket.gethostname()}-{os.getpid()}"

class WorkerPool:
    def __init__(
        self,
        configs: list[WorkerConfig],
        dispatcher: Dispatcher,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        worker_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
    ):
        self.configs = configs
        self.dispatcher = dispatcher
        self.worker_id = worker_id or default_worker_id()
        self._session_factory = session_factory
        self._poll_interval = settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._shutdown_grace = settings.SHUTDOWN_GRACE_SECONDS if shutdown_grace is None else shutdown_grace

        self._stopping = asyncio.Event()
        self._consumers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._semaphores = {c.queue: asyncio.Semaphore(c.concurrency) for c in configs}
        self._limiters = {
            c.queue: SlidingWindowRateLimiter(c.rate_limit.max_jobs, c.rate_limit.per_seconds)
            for c in configs if c.rate_limit
        }

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self):
        self._stopping.clear()
        for config in self.configs:
            task = asyncio.create_task(self._consume(config), name=f"consumer-{config.queue.value}")
            self._consumers.append(task)
            logger.info(
                "Worker %s consuming %s (concurrency=%s, rate_limit=%s)",
                self.worker_id, config.queue.value, config.concurrency, config.rate_limit,
            )

    async def stop(self):
        """
        Stops leasing, waits up to the grace period for running handlers and
        cancels the rest. Cancelled jobs stay RUNNING for the stuck detector.
        """
        self._stopping.set()
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()

        if self._inflight:
            logger.info("Waiting up to %ss for %s in-flight jobs", self._shutdown_grace, len(self._inflight))
            _, pending = await asyncio.wait(set(self._inflight), timeout=self._shutdown_grace)
            if pending:
                logger.warning("Abandoning %s jobs still running after grace period", len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker %s stopped.", self.worker_id)

    async def _consume(self, config: WorkerConfig):
        queue = config.queue.value
        semaphore = self._semaphores[config.queue]
        limiter = self._limiters.get(config.queue)

        while not self._stopping.is_set():
            await semaphore.acquire()
            handed_off = False
            try:
                if limiter:
                    if limiter.delay() > 0:
                        RATE_LIMIT_WAITS.labels(queue=queue).inc()
                    if not await limiter.wait(self._stopping):
                        break

                job = await self._lease(config)
                if job is None:
                    await self._idle(self._poll_interval)
                    continue

                if limiter:
                    limiter.record()

                task = asyncio.create_task(self._execute(config, job, semaphore))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                handed_off = True
            except Exception as e:
                logger.error(f"Error in {queue} consumer loop: {e}", exc_info=True)
                await self._idle(ERROR_BACKOFF_SECONDS)
            finally:
                if not handed_off:
                    semaphore.release()

    async def _lease(self, config: WorkerConfig) -> Optional[JobContext]:
        async with self._session_factory() as session:
            job = await lease_job(session, config.queue.value, self.worker_id)
            if job is None:
                await session.commit()
                return None
            context = JobContext(
                id=job.id,
                type=job.type,
                queue=job.queue,
                payload=dict(job.payload or {}),
                attempts_made=job.attempts,
                max_attempts=job.max_attempts,
            )
            await session.commit()
        logger.debug("Leased job %s (%s) attempt %s/%s", context.id, context.type, context.attempts_made, context.max_attempts)
        return context

    async def _execute(self, config: WorkerConfig, job: JobContext, semaphore: asyncio.Semaphore):
        queue = config.queue.value
        JOBS_INFLIGHT.labels(queue=queue).inc()
        try:
            outcome = await self.dispatcher.dispatch(job, timeout=config.timeout_seconds)
            await self._record(config, job, outcome)
        except Exception as e:
            # Job stays RUNNING; the stuck detector reclaims it
            logger.error(f"Failed to record outcome of job {job.id}: {e}", exc_info=True)
        finally:
            JOBS_INFLIGHT.labels(queue=queue).dec()
            semaphore.release()

    async def _record(self, config: WorkerConfig, job: JobContext, outcome: DispatchOutcome):
        result = outcome.result
        async with self._session_factory() as session:
            if result.success:
                await complete_job(session, job.id, result)
                await session.commit()
                logger.info("Job %s (%s) completed on attempt %s", job.id, job.type, job.attempts_made)
                return

            record = await fail_job(
                session,
                job.id,
                error=result.error or result.message or "Job failed",
                policy=config.retry_policy,
                error_category=result.error_category,
                retryable=outcome.retryable,
                result=result,
            )
            await session.commit()
            logger.info("Job %s (%s) attempt %s/%s -> %s", job.id, job.type, record.attempts, record.max_attempts, record.status)

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
