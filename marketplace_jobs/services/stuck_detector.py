import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import ORPHANS_RESUBMITTED_TOTAL, STUCK_FAILED_TOTAL, STUCK_HEALED_TOTAL
from marketplace_jobs.commands.requeue_stuck import requeue_stuck_jobs, resubmit_orphaned_jobs
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.models import StuckDetectionResult
from marketplace_jobs.domain.queues import QUEUE_CONFIG
from marketplace_jobs.settings import settings
from marketplace_jobs.utils.time import utcnow

logger = logging.getLogger(__name__)

class StuckTaskDetector:
    """
    Safety net for jobs left RUNNING/RETRYING by a crashed or killed worker.

    A job counts as stuck once started_at is older than the larger of the
    global timeout and its queue's handler timeout plus a grace period, so
    long sync jobs are never reclaimed while still healthy.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        timeout_minutes: Optional[int] = None,
        grace_minutes: Optional[int] = None,
        orphan_grace_minutes: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.timeout = timedelta(minutes=settings.STUCK_TASK_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes)
        grace = timedelta(minutes=settings.STUCK_TASK_GRACE_MINUTES if grace_minutes is None else grace_minutes)
        self.orphan_grace = timedelta(minutes=settings.ORPHAN_GRACE_MINUTES if orphan_grace_minutes is None else orphan_grace_minutes)
        self.thresholds = {
            queue.value: max(self.timeout, timedelta(seconds=config.timeout_seconds) + grace)
            for queue, config in QUEUE_CONFIG.items()
        }

    async def detect_stuck_tasks(self) -> StuckDetectionResult:
        now = utcnow()

        async with self._session_factory() as session:
            healed, failed = await requeue_stuck_jobs(session, self.thresholds, self.timeout, now=now)
            await session.commit()

        for job in healed:
            logger.warning("Healed stuck job %s (%s) attempt %s/%s -> PENDING",
                           job.id, job.type, job.attempts, job.max_attempts)
        for job in failed:
            logger.error("Stuck job %s (%s) failed permanently after %s attempts",
                         job.id, job.type, job.attempts)

        async with self._session_factory() as session:
            orphans = await resubmit_orphaned_jobs(session, older_than=now - self.orphan_grace, now=now)
            await session.commit()

        for job in orphans:
            logger.warning("Re-submitted orphaned PENDING job %s (%s) to %s", job.id, job.type, job.queue)

        STUCK_HEALED_TOTAL.inc(len(healed))
        STUCK_FAILED_TOTAL.inc(len(failed))
        ORPHANS_RESUBMITTED_TOTAL.inc(len(orphans))

        result = StuckDetectionResult(
            healed=len(healed),
            permanently_failed=len(failed),
            resubmitted=len(orphans),
        )
        if healed or failed or orphans:
            logger.info("Stuck-task detection: %s", result)
        return result
