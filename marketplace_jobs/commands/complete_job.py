from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import Job
from marketplace_jobs.domain.models import JobResult
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.domain.errors import JobNotFoundError, InvalidJobStateError
from marketplace_jobs.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL
from marketplace_jobs.commands.enqueue_job import get_queue_entry
from marketplace_jobs.utils.time import utcnow

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    result: JobResult,
) -> Job:
    """
    Marks a RUNNING job COMPLETED, stores the handler result and finishes
    its queue entry. Completing an already COMPLETED job is a no-op.
    """
    now = utcnow()

    job = await session.get(Job, job_id, with_for_update=True)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.RUNNING:
        if job.status == JobStatus.COMPLETED:
            return job
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    job.status = JobStatus.COMPLETED
    job.result = result.to_dict()
    job.error = None
    job.error_category = None
    job.completed_at = now
    job.updated_at = now

    entry = await get_queue_entry(session, job, now)
    entry.state = EntryState.COMPLETED
    entry.finished_at = now

    if job.started_at:
        duration = (now - job.started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.labels(queue=job.queue).observe(duration)

    JOB_COMPLETE_TOTAL.labels(queue=job.queue, type=job.type).inc()

    await session.flush()
    return job
