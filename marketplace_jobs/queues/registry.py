"""
Queue Registry: the single entry point producers use to submit work.

Every enqueue writes the durable Job row and its broker entry in one
transaction, so a crash never leaves a submitted job without a record (or a
record that nothing will ever pick up).
"""
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import JOBS_DEDUPLICATED, JOBS_ENQUEUED, QUEUE_DEPTH, QUEUE_ENTRIES_CLEANED
from marketplace_jobs.commands.clean_queues import clean_finished_entries
from marketplace_jobs.commands.enqueue_job import enqueue_job, find_inflight_job
from marketplace_jobs.db.models import Job, QueueEntry
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.errors import JobNotFoundError, PayloadValidationError, QueueMismatchError, UnknownQueueError
from marketplace_jobs.domain.models import JobHandle
from marketplace_jobs.domain.payloads import validate_payload
from marketplace_jobs.domain.queues import (
    ALL_SITES,
    DEDUPE_EXEMPT_TYPES,
    JOB_TYPE_TO_QUEUE,
    QUEUE_CONFIG,
    QUEUE_NAMES,
    QueueName,
    SITE_OPTIONAL_TYPES,
)
from marketplace_jobs.domain.retry import RetryPolicy
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.settings import settings
from marketplace_jobs.utils.time import utcnow

logger = logging.getLogger(__name__)

@dataclass
class EnqueueOptions:
    delay_seconds: float = 0
    dedupe_key: Optional[str] = None
    attempts: Optional[int] = None
    priority: Optional[int] = None
    backoff: Optional[RetryPolicy] = None

@dataclass(frozen=True)
class QueueMetrics:
    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }

def extract_site_id(payload: dict[str, Any]) -> Optional[str]:
    site_id = payload.get("siteId") or payload.get("site_id")
    if not site_id or site_id == ALL_SITES:
        return None
    return str(site_id)

def default_dedupe_key(job_type: str, payload: dict[str, Any]) -> Optional[str]:
    """One in-flight job per (site, job type) unless the type is exempt."""
    if job_type in DEDUPE_EXEMPT_TYPES:
        return None
    site_id = extract_site_id(payload)
    if not site_id:
        return None
    return f"{site_id}:{job_type}"

def check_queue(queue_name: str, job_type: str) -> QueueName:
    if queue_name not in QUEUE_NAMES:
        raise UnknownQueueError(queue_name)
    expected = JOB_TYPE_TO_QUEUE.get(job_type)
    # Types the registry does not know are accepted and fail at dispatch
    if expected is not None and expected != queue_name:
        raise QueueMismatchError(job_type, queue_name, expected)
    return QueueName(queue_name)

def check_payload(job_type: str, payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise PayloadValidationError(f"Payload for {job_type} must be an object")

    if job_type in JOB_TYPE_TO_QUEUE and job_type not in SITE_OPTIONAL_TYPES:
        if not (payload.get("siteId") or payload.get("site_id") or payload.get("domainId")):
            raise PayloadValidationError(f"Job type {job_type} requires siteId in payload")

    validate_payload(job_type, payload)

class QueueRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[EnqueueOptions] = None,
    ) -> JobHandle:
        """
        Validates and submits one job.

        Raises UnknownQueueError / QueueMismatchError / PayloadValidationError
        before touching the store. With a dedupe key (explicit, or the
        site+type default) an in-flight duplicate returns the existing job id.
        """
        options = options or EnqueueOptions()
        queue = check_queue(queue_name, job_type)
        check_payload(job_type, payload)

        config = QUEUE_CONFIG[queue]
        dedupe_key = options.dedupe_key or default_dedupe_key(job_type, payload)

        # The stored backoff policy and max_attempts always agree
        backoff = options.backoff
        max_attempts = options.attempts or (backoff.attempts if backoff else None) or config.attempts
        if backoff is not None and backoff.attempts != max_attempts:
            backoff = replace(backoff, attempts=max_attempts)

        async with self._session_factory() as session:
            try:
                job, created = await enqueue_job(
                    session,
                    job_type,
                    queue.value,
                    dict(payload),
                    max_attempts=max_attempts,
                    priority=options.priority if options.priority is not None else 5,
                    delay_seconds=options.delay_seconds,
                    site_id=extract_site_id(payload),
                    dedupe_key=dedupe_key,
                    backoff=backoff,
                )
                await session.commit()
            except IntegrityError:
                # Lost a race on the in-flight dedupe index
                await session.rollback()
                if not dedupe_key:
                    raise
                job = await find_inflight_job(session, dedupe_key)
                if job is None:
                    raise
                created = False

        if not created:
            JOBS_DEDUPLICATED.labels(queue=queue.value).inc()
            logger.debug("Deduplicated %s on %s (key=%s, existing=%s)", job_type, queue.value, dedupe_key, job.id)
            return JobHandle(job_id=job.id, queue=queue.value, deduplicated=True)

        JOBS_ENQUEUED.labels(queue=queue.value, type=job_type).inc()
        logger.info("Enqueued %s job %s on %s", job_type, job.id, queue.value)
        return JobHandle(job_id=job.id, queue=queue.value)

    async def clean_all_queues(
        self,
        completed_max_age: Optional[int] = None,
        failed_max_age: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> dict[str, int]:
        """
        Trims finished broker entries past their retention window (seconds).
        Waiting and active entries, and all Job rows, are left alone.
        """
        completed_max_age = completed_max_age if completed_max_age is not None else settings.COMPLETED_RETENTION_SECONDS
        failed_max_age = failed_max_age if failed_max_age is not None else settings.FAILED_RETENTION_SECONDS
        batch_size = batch_size or settings.CLEANUP_BATCH_SIZE

        now = utcnow()
        windows = (
            (EntryState.COMPLETED, now - timedelta(seconds=completed_max_age)),
            (EntryState.FAILED, now - timedelta(seconds=failed_max_age)),
        )

        queues_cleaned = 0
        jobs_removed = 0
        async with self._session_factory() as session:
            for queue in QueueName:
                for state, cutoff in windows:
                    removed = await clean_finished_entries(session, queue.value, state, cutoff, batch_size)
                    if removed:
                        QUEUE_ENTRIES_CLEANED.labels(queue=queue.value, state=state.value).inc(removed)
                    jobs_removed += removed
                queues_cleaned += 1
            await session.commit()

        if jobs_removed:
            logger.info("Queue cleanup removed %s finished entries across %s queues", jobs_removed, queues_cleaned)
        return {"queues_cleaned": queues_cleaned, "jobs_removed": jobs_removed}

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        if queue_name not in QUEUE_NAMES:
            raise UnknownQueueError(queue_name)
        return (await self._collect_metrics([queue_name]))[queue_name]

    async def get_all_queue_metrics(self) -> list[QueueMetrics]:
        names = [q.value for q in QueueName]
        collected = await self._collect_metrics(names)
        return [collected[name] for name in names]

    async def _collect_metrics(self, queue_names: list[str]) -> dict[str, QueueMetrics]:
        now = utcnow()
        counts: dict[str, dict[str, int]] = {name: {} for name in queue_names}

        async with self._session_factory() as session:
            by_state = (
                select(QueueEntry.queue, QueueEntry.state, func.count(QueueEntry.id))
                .where(QueueEntry.queue.in_(queue_names))
                .group_by(QueueEntry.queue, QueueEntry.state)
            )
            for queue, state, count in (await session.execute(by_state)).all():
                counts[queue][state] = count

            # Waiting entries not yet available are reported as delayed
            delayed = (
                select(QueueEntry.queue, func.count(QueueEntry.id))
                .where(
                    QueueEntry.queue.in_(queue_names),
                    QueueEntry.state == EntryState.WAITING,
                    QueueEntry.available_at > now,
                )
                .group_by(QueueEntry.queue)
            )
            for queue, count in (await session.execute(delayed)).all():
                counts[queue]["delayed"] = count

        result = {}
        for name in queue_names:
            c = counts[name]
            delayed_count = c.get("delayed", 0)
            result[name] = QueueMetrics(
                queue=name,
                waiting=c.get(EntryState.WAITING, 0) - delayed_count,
                active=c.get(EntryState.ACTIVE, 0),
                completed=c.get(EntryState.COMPLETED, 0),
                failed=c.get(EntryState.FAILED, 0),
                delayed=delayed_count,
            )
            for state in ("waiting", "active", "completed", "failed", "delayed"):
                QUEUE_DEPTH.labels(queue=name, state=state).set(getattr(result[name], state))
        return result

    async def remove_job(self, job_id: UUID) -> bool:
        """
        Takes a job that has not started out of its queue. The waiting entry
        is deleted and the Job row is closed as FAILED (error_category
        "removed") so orphan re-submission leaves it alone. Running jobs
        cannot be removed.
        """
        async with self._session_factory() as session:
            job = await session.get(Job, job_id, with_for_update=True)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status not in (JobStatus.PENDING, JobStatus.RETRYING):
                return False

            res = await session.execute(
                delete(QueueEntry).where(
                    QueueEntry.job_id == job_id,
                    QueueEntry.state == EntryState.WAITING,
                )
            )
            if not res.rowcount:
                await session.rollback()
                return False

            now = utcnow()
            job.status = JobStatus.FAILED
            job.error = "Removed from queue"
            job.error_category = "removed"
            job.completed_at = now
            job.updated_at = now
            await session.commit()

        logger.info("Removed job %s from queue %s", job_id, job.queue)
        return True
