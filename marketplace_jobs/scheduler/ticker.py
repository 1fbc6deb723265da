from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.queues.registry import QueueRegistry
from marketplace_jobs.scheduler.recurring import enqueue_due_jobs

async def run_ticker(
    registry: QueueRegistry,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> int:
    """
    One scheduler tick:
    1. Fire due recurring schedules (enqueue only, never run job logic)
    2. Refresh the per-queue depth gauges
    """
    fired = await enqueue_due_jobs(registry, session_factory)

    # Depth gauges are set as a side effect of collecting metrics
    await registry.get_all_queue_metrics()

    return fired
