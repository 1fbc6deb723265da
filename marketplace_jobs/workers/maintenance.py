from marketplace_jobs.domain.models import JobContext, JobResult
from marketplace_jobs.domain.payloads import QueueCleanupPayload
from marketplace_jobs.domain.queues import JobType, QueueName
from marketplace_jobs.queues.registry import QueueRegistry
from marketplace_jobs.workers.dispatch import Processors

def build_maintenance_processors(registry: QueueRegistry) -> Processors:
    """Handlers the scheduling core ships itself."""

    async def queue_cleanup(job: JobContext) -> JobResult:
        payload = job.data or QueueCleanupPayload.model_validate(job.payload)
        stats = await registry.clean_all_queues(
            completed_max_age=payload.completed_max_age,
            failed_max_age=payload.failed_max_age,
        )
        return JobResult(
            success=True,
            message=f"Removed {stats['jobs_removed']} finished entries from {stats['queues_cleaned']} queues",
            data=stats,
        )

    return {
        QueueName.SITE: {JobType.QUEUE_CLEANUP: queue_cleanup},
    }
