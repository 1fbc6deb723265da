from dataclasses import asdict
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import Job, QueueEntry
from marketplace_jobs.domain.retry import RetryPolicy
from marketplace_jobs.domain.states import ACTIVE_STATUSES, EntryState, JobStatus
from marketplace_jobs.utils.time import utcnow

async def find_inflight_job(session: AsyncSession, dedupe_key: str) -> Optional[Job]:
    stmt = select(Job).where(
        Job.dedupe_key == dedupe_key,
        Job.status.in_(ACTIVE_STATUSES),
    ).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()

async def enqueue_job(
    session: AsyncSession,
    job_type: str,
    queue: str,
    payload: dict[str, Any],
    *,
    max_attempts: int,
    priority: int = 5,
    delay_seconds: float = 0,
    site_id: Optional[str] = None,
    dedupe_key: Optional[str] = None,
    backoff: Optional[RetryPolicy] = None,
) -> tuple[Job, bool]:
    """
    Writes the Job row and its queue entry in the caller's transaction.

    Returns (job, created). When an in-flight job holds the same dedupe key
    the existing job is returned and nothing is written. The partial unique
    index on dedupe_key turns a concurrent duplicate into an IntegrityError
    at flush; the caller rolls back and looks the winner up.
    """
    if dedupe_key:
        existing = await find_inflight_job(session, dedupe_key)
        if existing:
            return existing, False

    now = utcnow()
    available_at = now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else now

    job = Job(
        type=job_type,
        queue=queue,
        payload=payload,
        status=JobStatus.PENDING,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        backoff=asdict(backoff) if backoff else None,
        site_id=site_id,
        dedupe_key=dedupe_key,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    session.add(QueueEntry(
        job_id=job.id,
        queue=queue,
        job_type=job_type,
        state=EntryState.WAITING,
        priority=priority,
        available_at=available_at,
        created_at=now,
    ))
    await session.flush()
    return job, True

async def get_queue_entry(session: AsyncSession, job: Job, now=None) -> QueueEntry:
    """Returns the job's queue entry, re-creating it if cleanup already trimmed it."""
    stmt = select(QueueEntry).where(QueueEntry.job_id == job.id).with_for_update()
    entry = (await session.execute(stmt)).scalar_one_or_none()
    if entry is None:
        now = now or utcnow()
        entry = QueueEntry(
            job_id=job.id,
            queue=job.queue,
            job_type=job.type,
            state=EntryState.WAITING,
            priority=job.priority,
            available_at=now,
            created_at=now,
        )
        session.add(entry)
    return entry
