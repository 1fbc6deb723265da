import logging
from datetime import datetime
from typing import Iterable, Optional

from croniter import croniter
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import SCHEDULED_TRIGGERS
from marketplace_jobs.db.models import RecurringSchedule
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.errors import ConfigurationError, JobError
from marketplace_jobs.domain.models import ScheduledJobDefinition
from marketplace_jobs.domain.queues import queue_for
from marketplace_jobs.queues.registry import EnqueueOptions, QueueRegistry
from marketplace_jobs.scheduler.definitions import ROADMAP_DEFINITION, SCHEDULED_JOBS, STUCK_DETECTION_DEFINITION
from marketplace_jobs.utils.time import utcnow

logger = logging.getLogger(__name__)

def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    return croniter(cron_expression, after).get_next(datetime)

def schedule_dedupe_key(job_type: str, fire_time: datetime) -> str:
    return f"schedule:{job_type}:{fire_time.isoformat()}"

def get_scheduled_jobs() -> list[ScheduledJobDefinition]:
    """Registered recurring jobs plus the interval-driven loops, for display."""
    return [*SCHEDULED_JOBS, ROADMAP_DEFINITION, STUCK_DETECTION_DEFINITION]

async def initialize_scheduled_jobs(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    definitions: Iterable[ScheduledJobDefinition] = SCHEDULED_JOBS,
    now: Optional[datetime] = None,
) -> int:
    """
    Upserts one recurring_schedules row per definition, keyed by
    (job_type, cron_expression). Existing rows keep their next_run_at so a
    restart neither skips nor doubles a fire. Rows for definitions no longer
    registered are deleted. Safe to call on every start.
    """
    now = now or utcnow()
    definitions = list(definitions)

    for definition in definitions:
        if not croniter.is_valid(definition.cron_expression):
            raise ConfigurationError(
                f"Invalid cron expression for {definition.job_type}: {definition.cron_expression}"
            )
        if queue_for(definition.job_type) is None:
            raise ConfigurationError(f"Scheduled job type {definition.job_type} has no queue")

    async with session_factory() as session:
        rows = (await session.execute(select(RecurringSchedule))).scalars().all()
        existing = {(row.job_type, row.cron_expression): row for row in rows}

        for definition in definitions:
            key = (str(definition.job_type), definition.cron_expression)
            row = existing.pop(key, None)
            if row is None:
                session.add(RecurringSchedule(
                    job_type=key[0],
                    cron_expression=key[1],
                    description=definition.description,
                    payload=dict(definition.payload),
                    next_run_at=next_fire_time(definition.cron_expression, now),
                ))
            else:
                row.description = definition.description
                row.payload = dict(definition.payload)

        for stale in existing.values():
            logger.info("Removing stale schedule %s (%s)", stale.job_type, stale.cron_expression)
            await session.delete(stale)

        await session.commit()

    logger.info("Scheduled jobs initialized: %s recurring definitions", len(definitions))
    return len(definitions)

async def remove_all_scheduled_jobs(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> int:
    async with session_factory() as session:
        res = await session.execute(delete(RecurringSchedule))
        removed = res.rowcount or 0
        await session.commit()
    logger.info("Removed %s scheduled jobs", removed)
    return removed

async def list_recurring_schedules(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> list[RecurringSchedule]:
    async with session_factory() as session:
        stmt = select(RecurringSchedule).order_by(RecurringSchedule.next_run_at.asc())
        return list((await session.execute(stmt)).scalars().all())

async def enqueue_due_jobs(
    registry: QueueRegistry,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    now: Optional[datetime] = None,
) -> int:
    """
    Fires every schedule whose next_run_at has passed: one Job per fire via
    the Queue Registry, then next_run_at moves past `now`. Missed fires
    while no scheduler ran collapse into a single enqueue.

    The enqueue happens before the schedule advances; a crash in between
    re-fires with the same dedupe key. Only one process runs this (the
    ENABLE_SCHEDULER worker); an overlapping call is still harmless because
    the fire is deduplicated and the advance only applies while
    next_run_at still equals the fire time.
    """
    now = now or utcnow()

    async with session_factory() as session:
        stmt = select(RecurringSchedule).where(
            RecurringSchedule.next_run_at <= now
        ).order_by(RecurringSchedule.next_run_at.asc())
        due = [
            (row.id, row.job_type, row.cron_expression, dict(row.payload or {}), row.next_run_at)
            for row in (await session.execute(stmt)).scalars().all()
        ]
        await session.commit()

    fired = 0
    for schedule_id, job_type, cron_expression, payload, fire_time in due:
        queue = queue_for(job_type)
        try:
            await registry.enqueue(
                queue,
                job_type,
                payload,
                EnqueueOptions(dedupe_key=schedule_dedupe_key(job_type, fire_time)),
            )
            fired += 1
            SCHEDULED_TRIGGERS.labels(type=job_type).inc()
        except JobError as e:
            # Still advance, a broken definition must not fire every tick
            logger.error("Scheduled %s (%s) could not be enqueued: %s", job_type, cron_expression, e)

        async with session_factory() as session:
            await session.execute(
                update(RecurringSchedule)
                .where(
                    RecurringSchedule.id == schedule_id,
                    RecurringSchedule.next_run_at == fire_time,
                )
                .values(
                    last_run_at=now,
                    next_run_at=next_fire_time(cron_expression, now),
                    updated_at=now,
                )
            )
            await session.commit()

    if fired:
        logger.info("Scheduler fired %s recurring jobs", fired)
    return fired
