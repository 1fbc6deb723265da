from fastapi import APIRouter, HTTPException

from marketplace_jobs.api.deps import Registry
from marketplace_jobs.domain.errors import UnknownQueueError
from marketplace_jobs.scheduler.recurring import get_scheduled_jobs, list_recurring_schedules

router = APIRouter()

@router.get("/queues")
async def list_queues(registry: Registry):
    return [m.to_dict() for m in await registry.get_all_queue_metrics()]

@router.get("/queues/{queue_name}")
async def get_queue(queue_name: str, registry: Registry):
    try:
        metrics = await registry.get_queue_metrics(queue_name)
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return metrics.to_dict()

@router.get("/schedules")
async def list_schedules(registry: Registry):
    rows = await list_recurring_schedules(registry.session_factory)
    next_runs = {(r.job_type, r.cron_expression): r for r in rows}
    result = []
    for definition in get_scheduled_jobs():
        row = next_runs.get((str(definition.job_type), definition.cron_expression))
        result.append({
            "job_type": str(definition.job_type),
            "schedule": definition.cron_expression,
            "description": definition.description,
            "next_run_at": row.next_run_at if row else None,
            "last_run_at": row.last_run_at if row else None,
        })
    return result
