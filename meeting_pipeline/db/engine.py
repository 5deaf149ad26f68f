"""
Database engine configuration.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from meeting_pipeline.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    Args:
        settings: Pipeline settings

    Returns:
        AsyncEngine instance
    """
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.debug)

    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
