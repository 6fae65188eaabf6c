"""Start-run jobs and the job queue boundary.

There is one job kind: "start run for subject S under flow F". The queue
delivers it at least once; ``run_start_job`` is safe to repeat because a
subject has a single run per flow.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import structlog

from campaign.engine import CampaignEngine, RunResult
from campaign.retry_strategies import RetryStrategy, execute_with_retry
from campaign.stores import FailedTaskStore, FlowStore
from core.constants import RunOutcome
from core.exceptions import TransientDeliveryError
from core.utils import utcnow

logger = structlog.get_logger(__name__)


async def run_start_job(
    engine: CampaignEngine,
    flows: FlowStore,
    flow_id: str,
    subject_id: str,
    subject_context: Optional[dict] = None,
) -> RunResult:
    """Execute one start-run job.

    Raises:
        TransientDeliveryError: When the run hit a retryable failure, so
            the queue's retry policy takes over.
    """
    flow = await flows.get(flow_id)
    if flow is None:
        logger.warning("Start-run job for unknown flow", flow_id=flow_id, subject_id=subject_id)
        return RunResult(run_id=None, outcome=RunOutcome.REJECTED, error=f"Flow {flow_id} not found")

    result = await engine.start_run(flow.id, flow.definition, subject_id, subject_context or {})
    if result.outcome == RunOutcome.RETRY:
        raise TransientDeliveryError(result.error or "Run step failed")
    return result


class JobQueue(ABC):
    """Accepts start-run jobs."""

    @abstractmethod
    async def enqueue_start_run(
        self,
        flow_id: str,
        subject_id: str,
        subject_context: Optional[dict] = None,
    ) -> str:
        """Queue a job and return its id."""
        ...


class InlineJobQueue(JobQueue):
    """Runs start-run jobs in the current event loop.

    Used by single-process deployments and tests. Retries follow
    ``strategy``; a job that still fails is recorded as a failed task.
    With ``background=False`` the job finishes before ``enqueue_start_run``
    returns.
    """

    def __init__(
        self,
        engine: CampaignEngine,
        flows: FlowStore,
        failed_tasks: FailedTaskStore,
        strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        background: bool = True,
    ):
        self.engine = engine
        self.flows = flows
        self.failed_tasks = failed_tasks
        self.strategy = strategy or RetryStrategy.exponential(max_retries=3, base_delay=5.0)
        self._sleep = sleep
        self.background = background
        self._pending: set[asyncio.Task] = set()

    async def enqueue_start_run(
        self,
        flow_id: str,
        subject_id: str,
        subject_context: Optional[dict] = None,
    ) -> str:
        job_id = str(uuid.uuid4())
        if not self.background:
            await self._execute(job_id, flow_id, subject_id, subject_context or {})
            return job_id

        task = asyncio.create_task(self._execute(job_id, flow_id, subject_id, subject_context or {}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return job_id

    async def _execute(self, job_id: str, flow_id: str, subject_id: str, subject_context: dict) -> None:
        attempts = 0

        async def attempt() -> RunResult:
            nonlocal attempts
            attempts += 1
            return await run_start_job(self.engine, self.flows, flow_id, subject_id, subject_context)

        try:
            result = await execute_with_retry(attempt, self.strategy, sleep=self._sleep)
        except Exception as e:
            logger.error(
                "Start-run job failed permanently",
                job_id=job_id,
                flow_id=flow_id,
                subject_id=subject_id,
                attempts=attempts,
                error=str(e),
            )
            await self.failed_tasks.record_job_failure(
                flow_id=flow_id,
                subject_id=subject_id,
                payload={"job_id": job_id, "subject_context": subject_context},
                error=str(e),
                retries=max(attempts - 1, 0),
                now=utcnow(),
            )
        else:
            logger.info(
                "Start-run job finished",
                job_id=job_id,
                run_id=result.run_id,
                outcome=result.outcome.value,
                attempts=attempts,
            )

    async def drain(self) -> None:
        """Wait for all background jobs to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
