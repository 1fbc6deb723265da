import asyncio
import logging
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase

from marketplace_jobs.settings import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

class Base(DeclarativeBase):
    pass

def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

async def init_db(bind: AsyncEngine = engine) -> None:
    # Import models so they register on Base.metadata
    from marketplace_jobs.db import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

async def wait_for_db(bind: AsyncEngine = engine, attempts: int = 10, delay: float = 2.0) -> None:
    """Creates the tables, retrying while the database is still coming up."""
    for i in range(attempts):
        try:
            await init_db(bind)
            return
        except (OperationalError, OSError) as e:
            if i == attempts - 1:
                raise
            logger.warning(f"Database not ready, retrying in {delay}s... ({i + 1}/{attempts}): {e}")
            await asyncio.sleep(delay)
