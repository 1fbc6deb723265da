import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import Job, QueueEntry
from marketplace_jobs.domain.states import EntryState, JobStatus, can_transition
from marketplace_jobs.api.v1.metrics import JOB_DISPATCH_COUNT, JOB_START_DELAY
from marketplace_jobs.utils.time import utcnow

logger = logging.getLogger(__name__)

# Stale entries skipped per call before giving up until the next poll
MAX_STALE_SKIPS = 5

async def lease_job(
    session: AsyncSession,
    queue: str,
    worker_id: str,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """
    Atomically claims the next waiting entry of `queue` for the worker and
    marks its Job RUNNING (attempts += 1, started_at = now).

    The caller must commit before running the handler, so a crash during
    handler execution leaves an accurate RUNNING record behind.
    Ordering: priority ascending, then available_at (oldest first).
    """
    now = now or utcnow()

    for _ in range(MAX_STALE_SKIPS):
        stmt = select(QueueEntry).where(
            QueueEntry.queue == queue,
            QueueEntry.state == EntryState.WAITING,
            QueueEntry.available_at <= now,
        ).order_by(
            QueueEntry.priority.asc(),
            QueueEntry.available_at.asc(),
            QueueEntry.id.asc(),
        ).with_for_update(skip_locked=True).limit(1)

        entry = (await session.execute(stmt)).scalar_one_or_none()
        if not entry:
            return None

        job = await session.get(Job, entry.job_id, with_for_update=True)

        if job is None or not can_transition(job.status, JobStatus.RUNNING):
            # Entry outlived its job's lifecycle (e.g. healed and finished elsewhere)
            logger.warning(
                "Dropping stale queue entry %s for job %s (status=%s)",
                entry.id, entry.job_id, job.status if job else None,
            )
            entry.state = EntryState.COMPLETED if job and job.status == JobStatus.COMPLETED else EntryState.FAILED
            entry.finished_at = now
            await session.flush()
            continue

        entry.state = EntryState.ACTIVE
        entry.worker_id = worker_id
        entry.leased_at = now

        job.status = JobStatus.RUNNING
        job.attempts += 1
        job.started_at = now
        job.updated_at = now

        # Metrics
        JOB_DISPATCH_COUNT.labels(queue=queue).inc()
        delay = (now - entry.available_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

        await session.flush()
        return job

    return None
