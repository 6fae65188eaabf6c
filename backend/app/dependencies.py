"""FastAPI dependency injection functions."""

import logging

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.runtime import CampaignRuntime
from campaign.jobs import JobQueue
from campaign.scheduler import Scheduler
from core.exceptions import CampaignException
from db.database import AsyncSessionLocal

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


def get_runtime(request: Request) -> CampaignRuntime:
    """The runtime built at startup (engine, stores, collaborators)."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise CampaignException("Campaign runtime is not initialized", 503)
    return runtime


def get_job_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise CampaignException("Job queue is not initialized", 503)
    return queue


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise CampaignException("Scheduler is not initialized", 503)
    return scheduler
