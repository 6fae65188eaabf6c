"""Celery tasks for starting runs.

``start_run`` is the only job kind. A retryable step failure surfaces as
``TransientDeliveryError`` and Celery retries the task with jittered
exponential backoff. When the last attempt fails, ``on_failure`` records a
``FailedTask`` so the job stays inspectable after the result expires.
"""

import asyncio
import logging

from app.config import get_settings
from app.runtime import campaign_runtime
from campaign.jobs import run_start_job
from core.exceptions import TransientDeliveryError
from core.utils import utcnow
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)
settings = get_settings()


class StartRunTask(celery_app.Task):
    """Base task: retry policy plus permanent-failure bookkeeping."""

    autoretry_for = (TransientDeliveryError,)
    retry_backoff = settings.JOB_BACKOFF_SECONDS
    retry_backoff_max = settings.JOB_BACKOFF_MAX_SECONDS
    retry_jitter = True
    max_retries = max(settings.JOB_MAX_ATTEMPTS - 1, 0)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        flow_id, subject_id = (list(args) + [None, None])[:2]
        flow_id = kwargs.get("flow_id", flow_id)
        subject_id = kwargs.get("subject_id", subject_id)
        logger.error(
            f"[start-run] Job {task_id} failed permanently after "
            f"{self.request.retries} retries: {exc}"
        )

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(
                _record_failure(task_id, flow_id, subject_id, kwargs, str(exc), self.request.retries)
            )
        except Exception as e:
            logger.error(f"[start-run] Could not record failure for job {task_id}: {e}", exc_info=True)
        finally:
            loop.close()


async def _record_failure(task_id, flow_id, subject_id, kwargs, error, retries) -> None:
    async with campaign_runtime() as rt:
        await rt.failed_tasks.record_job_failure(
            flow_id=flow_id,
            subject_id=subject_id,
            payload={"job_id": task_id, "subject_context": kwargs.get("subject_context") or {}},
            error=error,
            retries=retries,
            now=utcnow(),
        )


@celery_app.task(
    base=StartRunTask,
    name="worker.tasks.runs.start_run",
    bind=True,
    acks_late=True,
    queue="campaigns",
)
def start_run(self, flow_id: str, subject_id: str, subject_context: dict = None):
    """Start (or continue) one subject's run of a flow."""
    logger.info(
        f"[start-run] flow={flow_id} subject={subject_id} attempt={self.request.retries + 1}"
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_start_run(flow_id, subject_id, subject_context or {}))
        logger.info(f"[start-run] flow={flow_id} subject={subject_id} → {result['outcome']}")
        return result
    finally:
        loop.close()


async def _start_run(flow_id: str, subject_id: str, subject_context: dict) -> dict:
    async with campaign_runtime() as rt:
        result = await run_start_job(rt.engine, rt.flows, flow_id, subject_id, subject_context)
    return result.to_dict()
