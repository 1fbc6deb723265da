"""
Pytest configuration for the marketplace jobs tests.

Every test gets its own file-backed SQLite store (aiosqlite) with the full
schema, plus registry / pause-control instances bound to it. Transactions
open with BEGIN IMMEDIATE so concurrent sessions queue on the write lock
the way row locks serialize them on Postgres.
"""

import asyncio
from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace_jobs.db.models import Job, QueueEntry, Site
from marketplace_jobs.db.session import init_db, make_session_factory
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.queues.registry import QueueRegistry
from marketplace_jobs.services.pause_control import PauseControl, SettingsProvider
from marketplace_jobs.utils.time import utcnow


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        # Stop the driver from issuing its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return QueueRegistry(session_factory)


@pytest.fixture
def pause_control(session_factory):
    """Pause control without caching, so admin changes apply immediately."""
    return PauseControl(SettingsProvider(session_factory, ttl_seconds=0), session_factory)


# -----------------------------------------------------------------------------
# Data helpers
# -----------------------------------------------------------------------------
@pytest.fixture
def make_site(session_factory):
    """Inserts a Site row and returns it."""
    async def _make_site(site_id: str, name: Optional[str] = None, created_offset: int = 0, **fields) -> Site:
        async with session_factory() as session:
            site = Site(
                id=site_id,
                name=name or site_id.upper(),
                created_at=utcnow() - timedelta(minutes=60 - created_offset),
                **fields,
            )
            session.add(site)
            await session.commit()
        return site
    return _make_site


@pytest.fixture
def load_job(session_factory):
    async def _load_job(job_id) -> Job:
        async with session_factory() as session:
            return await session.get(Job, job_id)
    return _load_job


@pytest.fixture
def load_entry(session_factory):
    async def _load_entry(job_id) -> Optional[QueueEntry]:
        async with session_factory() as session:
            return (await session.execute(
                select(QueueEntry).where(QueueEntry.job_id == job_id)
            )).scalar_one_or_none()
    return _load_entry


@pytest.fixture
def force_running(session_factory):
    """Puts a job into RUNNING as if a worker leased it at `started_at` and died."""
    async def _force_running(job_id, started_at, attempts: int = 1, max_attempts: Optional[int] = None):
        async with session_factory() as session:
            job = await session.get(Job, job_id)
            job.status = JobStatus.RUNNING
            job.attempts = attempts
            if max_attempts is not None:
                job.max_attempts = max_attempts
            job.started_at = started_at
            entry = (await session.execute(
                select(QueueEntry).where(QueueEntry.job_id == job_id)
            )).scalar_one()
            entry.state = EntryState.ACTIVE
            entry.worker_id = "dead-worker"
            entry.leased_at = started_at
            await session.commit()
    return _force_running


@pytest.fixture
def wait_for_status(load_job):
    """Polls a job until it reaches one of `statuses` or the timeout expires."""
    async def _wait(job_id, *statuses, timeout: float = 5.0) -> Job:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = await load_job(job_id)
            if job.status in statuses or loop.time() > deadline:
                return job
            await asyncio.sleep(0.02)
    return _wait
