"""Scheduler: promotes due flows and resumes due deferred tasks.

Each ``tick`` does two things:

1. Flow promotion: scheduled flows whose ``scheduled_at`` has passed get
   one start-run job per audience subject and are then marked ``queued``.
2. Deferred resumption: due tasks are leased, handed to the engine, and
   deleted on success. Retryable failures are rescheduled with exponential
   backoff; a task out of retries, or whose run errored, becomes a
   ``FailedTask``.

The scheduler runs either in-process (``start``/``stop`` manage an asyncio
loop) or under Celery beat, which calls ``tick`` on an interval.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from campaign.engine import CampaignEngine, RunResult
from campaign.graph import validate_flow
from campaign.jobs import JobQueue
from campaign.retry_strategies import RetryStrategy
from campaign.stores import DeferredTaskStore, FailedTaskStore, FlowStore, RunStore
from core.constants import FlowStatus, RunOutcome
from core.utils import utcnow
from db.models import DeferredTask

logger = structlog.get_logger(__name__)


class Scheduler:
    """Polls for due work on a fixed interval."""

    def __init__(
        self,
        engine: CampaignEngine,
        flows: FlowStore,
        runs: RunStore,
        deferred: DeferredTaskStore,
        failed_tasks: FailedTaskStore,
        queue: JobQueue,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: float = 30,
        batch_size: int = 100,
        max_retries: int = 3,
        retry_strategy: Optional[RetryStrategy] = None,
        lease_seconds: float = 300,
    ):
        self.engine = engine
        self.flows = flows
        self.runs = runs
        self.deferred = deferred
        self.failed_tasks = failed_tasks
        self.queue = queue
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_strategy = retry_strategy or RetryStrategy.exponential(
            max_retries=max_retries, base_delay=120.0, max_delay=3600.0
        )
        self.lease = timedelta(seconds=lease_seconds)

        self.is_running = False
        self.last_tick_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    # ─── Flow promotion ───────────────────────────────────────

    async def promote_due_flows(self) -> int:
        """Enqueue start-run jobs for every due scheduled flow."""
        promoted = 0
        for flow in await self.flows.due_for_promotion(self.clock(), self.batch_size):
            check = validate_flow(flow.definition)
            if not check.valid:
                logger.error("Scheduled flow is invalid, pausing it", flow_id=flow.id, error=check.error)
                await self.flows.set_status(flow.id, FlowStatus.PAUSED, expected=FlowStatus.SCHEDULED)
                continue

            try:
                for member in flow.audience or []:
                    await self.queue.enqueue_start_run(
                        flow.id, member["subject_id"], member.get("context") or {}
                    )
            except Exception as e:
                # Flow stays scheduled; the next tick enqueues again
                logger.error("Flow promotion failed", flow_id=flow.id, error=str(e))
                continue

            if await self.flows.mark_queued(flow.id):
                promoted += 1
                logger.info("Flow promoted", flow_id=flow.id, subjects=len(flow.audience or []))
        return promoted

    # ─── Deferred resumption ──────────────────────────────────

    async def resume_due_tasks(self) -> dict[str, int]:
        """Resume every due deferred task."""
        counts = {"resumed": 0, "retried": 0, "failed": 0, "skipped": 0}
        now = self.clock()
        for task in await self.deferred.due(now, self.batch_size):
            if not await self.deferred.claim(task, self.lease, now):
                counts["skipped"] += 1
                continue
            counts[await self._process_task(task)] += 1
        return counts

    async def _process_task(self, task: DeferredTask) -> str:
        try:
            result = await self.engine.resume(task)
        except Exception as e:
            logger.exception("Deferred task raised", task_id=task.id, run_id=task.run_id)
            result = RunResult(task.run_id, RunOutcome.RETRY, error=str(e), retryable=True)

        if result.outcome in (RunOutcome.COMPLETED, RunOutcome.SUSPENDED, RunOutcome.NOOP):
            await self.deferred.delete(task.id)
            return "resumed"

        return await self._handle_failure(task, result)

    async def _handle_failure(self, task: DeferredTask, result: RunResult) -> str:
        error = result.error or "Deferred task failed"
        await self.deferred.mark_failed(task.id, error)

        if result.retryable and task.retry_count < self.max_retries:
            retry_count = task.retry_count + 1
            delay = self.retry_strategy.compute_delay(retry_count)
            node_id = result.node_id
            if node_id is None:
                # The attempt raised; the run may already have moved
                run = await self.runs.get(task.run_id)
                node_id = run.current_node_id if run else None
            await self.deferred.reschedule(
                task.id,
                retry_count=retry_count,
                execute_at=self.clock() + timedelta(seconds=delay),
                error=error,
                # Retry from where the run stopped, not from the original delay
                expected_node_id=node_id,
                resume_node_id=node_id,
            )
            logger.warning(
                "Deferred task rescheduled",
                task_id=task.id,
                run_id=task.run_id,
                retry=retry_count,
                max_retries=self.max_retries,
                delay_seconds=delay,
            )
            return "retried"

        run = await self.runs.get(task.run_id)
        await self.deferred.move_to_failed(
            task,
            error,
            self.clock(),
            flow_id=run.flow_id if run else None,
            subject_id=run.subject_id if run else None,
        )
        if result.retryable:
            await self.runs.fail(task.run_id, f"Retries exhausted: {error}", self.clock())
        return "failed"

    # ─── Loop ─────────────────────────────────────────────────

    async def tick(self) -> dict:
        """Run one scheduling pass. Never raises."""
        summary: dict = {"promoted": 0}
        try:
            summary["promoted"] = await self.promote_due_flows()
        except Exception as e:
            logger.exception("Flow promotion pass failed")
            summary["promotion_error"] = str(e)

        try:
            summary.update(await self.resume_due_tasks())
        except Exception as e:
            logger.exception("Deferred resumption pass failed")
            summary["resumption_error"] = str(e)

        self.last_tick_at = self.clock()
        if summary.get("promoted") or summary.get("resumed") or summary.get("failed"):
            logger.info("Scheduler tick", **summary)
        return summary

    async def sweep_overdue(self) -> dict:
        """Process work that fell due while no scheduler was running."""
        overdue = await self.deferred.count_overdue(self.clock())
        logger.info("Sweeping overdue work", overdue_tasks=overdue)
        return await self.tick()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        self.is_running = True
        await self.sweep_overdue()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started", interval_seconds=self.interval_seconds)

    async def _run_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.interval_seconds)
            await self.tick()

    async def stop(self) -> None:
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")

    # ─── Operations ───────────────────────────────────────────

    async def status(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "scheduled_flows": await self.flows.count_scheduled(),
            "pending_tasks": await self.deferred.count_pending(),
            "overdue_tasks": await self.deferred.count_overdue(self.clock()),
            "failed_tasks": await self.failed_tasks.count(),
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }

    async def cleanup(self, days: int = 30) -> dict[str, int]:
        """Delete failure records and completed runs older than ``days``."""
        cutoff = self.clock() - timedelta(days=days)
        deleted_failed = await self.failed_tasks.delete_before(cutoff)
        deleted_runs = await self.runs.delete_completed_before(cutoff)
        logger.info(
            "Cleanup completed",
            failed_tasks=deleted_failed,
            completed_runs=deleted_runs,
            cutoff=cutoff.isoformat(),
        )
        return {"failed_tasks": deleted_failed, "completed_runs": deleted_runs}
