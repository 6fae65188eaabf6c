"""Celery-backed job queue used by the scheduler and the API."""

from typing import Optional

from campaign.jobs import JobQueue
from worker.tasks.runs import start_run


class CeleryJobQueue(JobQueue):
    """Dispatch start-run jobs to the ``campaigns`` queue."""

    async def enqueue_start_run(
        self,
        flow_id: str,
        subject_id: str,
        subject_context: Optional[dict] = None,
    ) -> str:
        result = start_run.apply_async(
            kwargs={
                "flow_id": flow_id,
                "subject_id": subject_id,
                "subject_context": subject_context or {},
            },
            queue="campaigns",
        )
        return result.id
