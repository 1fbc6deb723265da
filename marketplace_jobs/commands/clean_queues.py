from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.models import QueueEntry
from marketplace_jobs.domain.states import EntryState

async def clean_finished_entries(
    session: AsyncSession,
    queue: str,
    state: EntryState,
    finished_before: datetime,
    limit: int,
) -> int:
    """
    Deletes up to `limit` queue entries of `queue` in a finished state whose
    finished_at is older than the cutoff. Job rows are never touched.
    """
    if state not in (EntryState.COMPLETED, EntryState.FAILED):
        raise ValueError(f"Refusing to clean entries in state {state}")

    ids = select(QueueEntry.id).where(
        QueueEntry.queue == queue,
        QueueEntry.state == state,
        QueueEntry.finished_at.is_not(None),
        QueueEntry.finished_at < finished_before,
    ).limit(limit)

    stmt = delete(QueueEntry).where(QueueEntry.id.in_(ids.scalar_subquery()))
    res = await session.execute(stmt, execution_options={"synchronize_session": False})
    return res.rowcount or 0
