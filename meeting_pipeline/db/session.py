"""
Session helpers for the meeting and event tables.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from meeting_pipeline.models import Base


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # Records are read back after commit by the store and the bus.
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_db_session(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Yield a session that commits when the block exits cleanly.

    Any exception rolls the unit of work back and propagates, so a
    failed conditional update never leaves a half-written meeting.
    """
    session = session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    else:
        await session.commit()
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine) -> None:
    """Create the meetings and pipeline_events tables if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
