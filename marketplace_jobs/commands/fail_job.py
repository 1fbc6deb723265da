from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import Job
from marketplace_jobs.domain.models import JobResult
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.domain.retry import RetryPolicy, calculate_next_run
from marketplace_jobs.domain.errors import JobNotFoundError, InvalidJobStateError
from marketplace_jobs.api.v1.metrics import JOB_FAILURES
from marketplace_jobs.commands.enqueue_job import get_queue_entry
from marketplace_jobs.utils.time import utcnow

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    policy: RetryPolicy,
    error_category: Optional[str] = None,
    retryable: bool = True,
    result: Optional[JobResult] = None,
) -> Job:
    """
    Records a failed attempt on a RUNNING job.

    Retryable failures with attempts left go to RETRYING and the entry is
    made available again after the backoff. Everything else is terminal
    FAILED with completed_at set.
    """
    now = utcnow()

    job = await session.get(Job, job_id, with_for_update=True)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.RUNNING:
        if job.status == JobStatus.FAILED:
            return job
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    # A stored override wins over the queue's policy
    if job.backoff:
        policy = RetryPolicy(**job.backoff)

    job.error = error
    job.error_category = error_category
    job.updated_at = now
    if result is not None:
        job.result = result.to_dict()

    entry = await get_queue_entry(session, job, now)

    if retryable and job.attempts < job.max_attempts:
        job.status = JobStatus.RETRYING
        entry.state = EntryState.WAITING
        entry.available_at = calculate_next_run(job.attempts, policy, now)
        entry.worker_id = None
        entry.leased_at = None
        JOB_FAILURES.labels(queue=job.queue, type=job.type, kind="retryable").inc()
    else:
        job.status = JobStatus.FAILED
        job.completed_at = now
        entry.state = EntryState.FAILED
        entry.finished_at = now
        JOB_FAILURES.labels(queue=job.queue, type=job.type, kind="final").inc()

    await session.flush()
    return job
