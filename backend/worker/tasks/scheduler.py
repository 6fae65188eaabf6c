"""Celery tasks driving the scheduler.

Beat calls ``tick`` every ``SCHEDULER_INTERVAL_SECONDS``. When a worker
comes up, ``sweep_overdue`` processes whatever fell due while no worker was
running.
"""

import asyncio
import logging

from celery.signals import worker_ready

from app.runtime import campaign_runtime
from worker.celery_app import celery_app
from worker.job_queue import CeleryJobQueue

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.scheduler.tick",
    queue="scheduler",
    ignore_result=True,
)
def tick():
    """Promote due flows and resume due deferred tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_tick(sweep=False))
    finally:
        loop.close()


@celery_app.task(
    name="worker.tasks.scheduler.sweep_overdue",
    queue="scheduler",
)
def sweep_overdue():
    """Catch up on work that fell due while no scheduler was running."""
    logger.info("[scheduler] Sweeping overdue work")
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_tick(sweep=True))
        logger.info(f"[scheduler] Sweep done: {result}")
        return result
    finally:
        loop.close()


async def _tick(sweep: bool) -> dict:
    async with campaign_runtime() as rt:
        scheduler = rt.build_scheduler(CeleryJobQueue())
        if sweep:
            return await scheduler.sweep_overdue()
        return await scheduler.tick()


@worker_ready.connect
def sweep_on_startup(sender=None, **kwargs):
    sweep_overdue.apply_async(queue="scheduler")
