from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import Job, QueueEntry
from marketplace_jobs.domain.errors import ErrorCategory
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.commands.enqueue_job import get_queue_entry
from marketplace_jobs.utils.time import utcnow

STUCK_ERROR = "Exceeded stuck-task timeout"

async def requeue_stuck_jobs(
    session: AsyncSession,
    thresholds: Mapping[str, timedelta],
    default_threshold: timedelta,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> tuple[list[Job], list[Job]]:
    """
    Finds RUNNING/RETRYING jobs whose started_at is older than their queue's
    threshold. Jobs with attempts left go back to PENDING with attempts
    unchanged and a fresh waiting entry; the rest are FAILED permanently.

    Returns (healed, failed).
    """
    now = now or utcnow()
    shortest = min([default_threshold, *thresholds.values()])

    stmt = select(Job).where(
        Job.status.in_((JobStatus.RUNNING, JobStatus.RETRYING)),
        Job.started_at.is_not(None),
        Job.started_at < now - shortest,
    ).order_by(Job.started_at.asc()).limit(limit).with_for_update(skip_locked=True)

    candidates = (await session.execute(stmt)).scalars().all()

    healed: list[Job] = []
    failed: list[Job] = []
    for job in candidates:
        threshold = thresholds.get(job.queue, default_threshold)
        if job.started_at >= now - threshold:
            continue

        entry = await get_queue_entry(session, job, now)
        job.updated_at = now

        if job.attempts < job.max_attempts:
            # Recovery, not a retry: attempts stays as is
            job.status = JobStatus.PENDING
            entry.state = EntryState.WAITING
            entry.available_at = now
            entry.worker_id = None
            entry.leased_at = None
            entry.finished_at = None
            healed.append(job)
        else:
            minutes = int(threshold.total_seconds() // 60)
            job.status = JobStatus.FAILED
            job.error = f"{STUCK_ERROR} ({minutes} minutes)"
            job.error_category = ErrorCategory.STUCK
            job.completed_at = now
            entry.state = EntryState.FAILED
            entry.finished_at = now
            failed.append(job)

    await session.flush()
    return healed, failed

async def resubmit_orphaned_jobs(
    session: AsyncSession,
    older_than: datetime,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> list[Job]:
    """
    PENDING jobs with no live queue entry (crash between store write and
    broker submit, or an entry trimmed by hand) get a fresh waiting entry.
    """
    now = now or utcnow()

    stmt = (
        select(Job)
        .outerjoin(QueueEntry, QueueEntry.job_id == Job.id)
        .where(
            Job.status == JobStatus.PENDING,
            Job.updated_at < older_than,
            or_(
                QueueEntry.id.is_(None),
                QueueEntry.state.not_in((EntryState.WAITING, EntryState.ACTIVE)),
            ),
        )
        .limit(limit)
    )
    orphans = (await session.execute(stmt)).scalars().all()

    for job in orphans:
        entry = await get_queue_entry(session, job, now)
        entry.state = EntryState.WAITING
        entry.available_at = now
        entry.worker_id = None
        entry.leased_at = None
        entry.finished_at = None
        job.updated_at = now

    await session.flush()
    return list(orphans)
