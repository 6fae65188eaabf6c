"""Celery tasks for maintenance and cleanup.

Runs daily at 3 AM (configured in beat_schedule) and deletes failed-task
records and completed runs older than ``RETENTION_DAYS``.
"""

import asyncio
import logging

from app.runtime import campaign_runtime
from worker.celery_app import celery_app, settings

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_old_data",
    queue="maintenance",
)
def cleanup_old_data(days: int = None):
    """Apply the retention policy."""
    days = days or settings.RETENTION_DAYS
    logger.info("Running daily cleanup (retention %s days)", days)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_cleanup(days))
        logger.info("Daily cleanup completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Daily cleanup failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()


async def _run_cleanup(days: int) -> dict:
    async with campaign_runtime() as rt:
        # Cleanup does not enqueue jobs
        scheduler = rt.build_scheduler(queue=None)
        return await scheduler.cleanup(days)
