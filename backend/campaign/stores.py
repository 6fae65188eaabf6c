"""Durable stores for flows, runs, deferred tasks and failure records.

Every store takes an ``async_sessionmaker`` and opens a short-lived session
per operation, so one store instance can be shared by concurrent jobs.
Writes that move a run or a task forward are conditional updates; a
``False`` return means another worker got there first.
"""

from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import FailedTaskKind, FlowStatus, RunStatus
from db.models import DeferredTask, FailedTask, Flow, Run

logger = structlog.get_logger(__name__)


class FlowStore:
    """Flow records and scheduled promotion."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get(self, flow_id: str) -> Optional[Flow]:
        async with self._sessions() as session:
            return await session.get(Flow, flow_id)

    async def create(self, **values) -> Flow:
        flow = Flow(**values)
        async with self._sessions() as session:
            session.add(flow)
            await session.commit()
        return flow

    async def due_for_promotion(self, now: datetime, limit: int = 100) -> Sequence[Flow]:
        """Scheduled flows whose ``scheduled_at`` has passed."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Flow)
                .where(
                    Flow.status == FlowStatus.SCHEDULED.value,
                    Flow.scheduled_at <= now,
                )
                .order_by(Flow.scheduled_at)
                .limit(limit)
            )
            return result.scalars().all()

    async def set_status(
        self,
        flow_id: str,
        status: FlowStatus,
        expected: Optional[FlowStatus] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> bool:
        """Change a flow's status, optionally only from ``expected``."""
        values = {"status": status.value}
        if scheduled_at is not None:
            values["scheduled_at"] = scheduled_at
        query = update(Flow).where(Flow.id == flow_id)
        if expected is not None:
            query = query.where(Flow.status == expected.value)
        async with self._sessions() as session:
            result = await session.execute(
                query.values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def mark_queued(self, flow_id: str) -> bool:
        """Promote a scheduled flow. Idempotent: only one caller wins."""
        return await self.set_status(flow_id, FlowStatus.QUEUED, expected=FlowStatus.SCHEDULED)

    async def count_scheduled(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count()).select_from(Flow).where(
                    Flow.status == FlowStatus.SCHEDULED.value
                )
            )
            return result.scalar() or 0


class RunStore:
    """Run records. ``advance`` is the only way a run's node changes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get(self, run_id: str) -> Optional[Run]:
        async with self._sessions() as session:
            return await session.get(Run, run_id)

    async def find(self, flow_id: str, subject_id: str) -> Optional[Run]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Run).where(Run.flow_id == flow_id, Run.subject_id == subject_id)
            )
            return result.scalar_one_or_none()

    async def get_or_create(
        self,
        flow_id: str,
        subject_id: str,
        subject_context: dict,
        start_node_id: str,
        now: datetime,
    ) -> tuple[Run, bool]:
        """Return the subject's run for a flow, creating it at the start node.

        Returns:
            Tuple of (run, created)
        """
        existing = await self.find(flow_id, subject_id)
        if existing is not None:
            return existing, False

        run = Run(
            flow_id=flow_id,
            subject_id=subject_id,
            subject_context=subject_context or {},
            current_node_id=start_node_id,
            status=RunStatus.ACTIVE.value,
            started_at=now,
            last_processed_at=now,
            transitions=0,
        )
        async with self._sessions() as session:
            session.add(run)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                run = None

        if run is None:
            # Lost a creation race with another worker
            existing = await self.find(flow_id, subject_id)
            return existing, False
        return run, True

    async def advance(
        self,
        run: Run,
        new_node_id: str,
        new_status: Optional[RunStatus] = None,
        *,
        now: datetime,
        expected_node_id: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        """Move a run to ``new_node_id`` (and optionally a new status).

        The write only applies while the run is still active and still sits
        on ``expected_node_id`` (default: the node ``run`` was read at). On
        success the in-memory ``run`` is updated to match.

        Returns:
            True if this call performed the transition.
        """
        expected = expected_node_id or run.current_node_id
        values = {
            "current_node_id": new_node_id,
            "last_processed_at": now,
            "updated_at": now,
        }
        if new_status is not None:
            values["status"] = new_status.value
            if new_status == RunStatus.COMPLETED:
                values["completed_at"] = now
        if last_error is not None:
            values["last_error"] = last_error

        async with self._sessions() as session:
            result = await session.execute(
                update(Run)
                .where(
                    Run.id == run.id,
                    Run.current_node_id == expected,
                    Run.status == RunStatus.ACTIVE.value,
                )
                .values(transitions=Run.transitions + 1, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            return False
        for key, value in values.items():
            setattr(run, key, value)
        run.transitions = (run.transitions or 0) + 1
        return True

    async def record_error(self, run_id: str, error: str, now: datetime) -> None:
        """Store a non-fatal error on an active run without moving it."""
        async with self._sessions() as session:
            await session.execute(
                update(Run)
                .where(Run.id == run_id)
                .values(last_error=error, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def fail(self, run_id: str, error: str, now: datetime) -> bool:
        """Halt an active run as errored, wherever it sits."""
        async with self._sessions() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.status == RunStatus.ACTIVE.value)
                .values(
                    status=RunStatus.ERRORED.value,
                    last_error=error,
                    last_processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def touch(self, run: Run, now: datetime) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(Run)
                .where(Run.id == run.id, Run.status == RunStatus.ACTIVE.value)
                .values(last_processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        run.last_processed_at = now

    async def get_status(self, run_id: str) -> Optional[str]:
        async with self._sessions() as session:
            result = await session.execute(select(Run.status).where(Run.id == run_id))
            return result.scalar_one_or_none()

    async def cancel(self, run_id: str, now: datetime) -> bool:
        """Cancel an active run. Returns False if it was not active."""
        async with self._sessions() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.status == RunStatus.ACTIVE.value)
                .values(status=RunStatus.CANCELLED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_for_flow(
        self,
        flow_id: str,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Run], int]:
        """List a flow's runs, newest first.

        Returns:
            Tuple of (items, total_count)
        """
        query = select(Run).where(Run.flow_id == flow_id)
        count_query = select(func.count()).select_from(Run).where(Run.flow_id == flow_id)
        if status:
            query = query.where(Run.status == status)
            count_query = count_query.where(Run.status == status)

        async with self._sessions() as session:
            result = await session.execute(
                query.order_by(Run.started_at.desc()).offset(offset).limit(limit)
            )
            items = result.scalars().all()
            total = (await session.execute(count_query)).scalar() or 0
        return items, total

    async def delete_completed_before(self, cutoff: datetime) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                delete(Run).where(
                    Run.status == RunStatus.COMPLETED.value,
                    Run.completed_at < cutoff,
                )
            )
            await session.commit()
        return result.rowcount or 0


class DeferredTaskStore:
    """Pending "resume run R at node N at time T" records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def schedule(
        self,
        run_id: str,
        expected_node_id: str,
        resume_node_id: str,
        execute_at: datetime,
        flow_snapshot: dict,
    ) -> DeferredTask:
        """Create the run's deferred task, replacing any pending one.

        A replacement gets a new id, so a caller still holding the old task
        can delete it without touching the new one.
        """
        task = DeferredTask(
            run_id=run_id,
            expected_node_id=expected_node_id,
            resume_node_id=resume_node_id,
            execute_at=execute_at,
            flow_snapshot=flow_snapshot,
            retry_count=0,
            failed=False,
        )
        async with self._sessions() as session:
            await session.execute(delete(DeferredTask).where(DeferredTask.run_id == run_id))
            session.add(task)
            await session.commit()
        return task

    async def get(self, task_id: str) -> Optional[DeferredTask]:
        async with self._sessions() as session:
            return await session.get(DeferredTask, task_id)

    async def pending_for_run(self, run_id: str) -> Optional[DeferredTask]:
        async with self._sessions() as session:
            result = await session.execute(
                select(DeferredTask).where(
                    DeferredTask.run_id == run_id,
                    DeferredTask.failed == False,  # noqa: E712
                )
            )
            return result.scalar_one_or_none()

    async def due(self, now: datetime, limit: int = 100) -> Sequence[DeferredTask]:
        """Tasks whose ``execute_at`` has passed, oldest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(DeferredTask)
                .where(
                    DeferredTask.execute_at <= now,
                    DeferredTask.failed == False,  # noqa: E712
                )
                .order_by(DeferredTask.execute_at)
                .limit(limit)
            )
            return result.scalars().all()

    async def claim(self, task: DeferredTask, lease: timedelta, now: datetime) -> bool:
        """Lease a due task so concurrent schedulers skip it.

        Pushes ``execute_at`` forward by ``lease`` only if nobody else has
        touched it since it was read.
        """
        async with self._sessions() as session:
            result = await session.execute(
                update(DeferredTask)
                .where(
                    DeferredTask.id == task.id,
                    DeferredTask.execute_at == task.execute_at,
                    DeferredTask.failed == False,  # noqa: E712
                )
                .values(execute_at=now + lease, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def mark_failed(self, task_id: str, error: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(DeferredTask)
                .where(DeferredTask.id == task_id)
                .values(failed=True, last_error=error)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def reschedule(
        self,
        task_id: str,
        *,
        retry_count: int,
        execute_at: datetime,
        error: str,
        expected_node_id: Optional[str] = None,
        resume_node_id: Optional[str] = None,
    ) -> None:
        """Put a failed task back in line for another attempt."""
        values = {
            "retry_count": retry_count,
            "execute_at": execute_at,
            "failed": False,
            "last_error": error,
        }
        if expected_node_id is not None:
            values["expected_node_id"] = expected_node_id
        if resume_node_id is not None:
            values["resume_node_id"] = resume_node_id
        async with self._sessions() as session:
            await session.execute(
                update(DeferredTask)
                .where(DeferredTask.id == task_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def delete(self, task_id: str) -> None:
        async with self._sessions() as session:
            await session.execute(delete(DeferredTask).where(DeferredTask.id == task_id))
            await session.commit()

    async def move_to_failed(
        self,
        task: DeferredTask,
        error: str,
        now: datetime,
        flow_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> FailedTask:
        """Replace a deferred task with a permanent failure record."""
        record = FailedTask(
            kind=FailedTaskKind.DEFERRED.value,
            run_id=task.run_id,
            flow_id=flow_id,
            subject_id=subject_id,
            payload={
                "task_id": task.id,
                "expected_node_id": task.expected_node_id,
                "resume_node_id": task.resume_node_id,
                "execute_at": task.execute_at.isoformat(),
            },
            final_error=error,
            total_retries=task.retry_count,
            failed_at=now,
        )
        async with self._sessions() as session:
            session.add(record)
            await session.execute(delete(DeferredTask).where(DeferredTask.id == task.id))
            await session.commit()
        logger.warning(
            "Deferred task failed permanently",
            task_id=task.id,
            run_id=task.run_id,
            retries=task.retry_count,
            error=error,
        )
        return record

    async def count_pending(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count()).select_from(DeferredTask).where(
                    DeferredTask.failed == False  # noqa: E712
                )
            )
            return result.scalar() or 0

    async def count_overdue(self, now: datetime) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count()).select_from(DeferredTask).where(
                    DeferredTask.execute_at <= now,
                    DeferredTask.failed == False,  # noqa: E712
                )
            )
            return result.scalar() or 0


class FailedTaskStore:
    """Permanent failure records kept for inspection."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def record_job_failure(
        self,
        flow_id: str,
        subject_id: str,
        payload: dict,
        error: str,
        retries: int,
        now: datetime,
        run_id: Optional[str] = None,
    ) -> FailedTask:
        record = FailedTask(
            kind=FailedTaskKind.JOB.value,
            run_id=run_id,
            flow_id=flow_id,
            subject_id=subject_id,
            payload=payload,
            final_error=error,
            total_retries=retries,
            failed_at=now,
        )
        async with self._sessions() as session:
            session.add(record)
            await session.commit()
        return record

    async def list(self, kind: Optional[str] = None, limit: int = 100) -> Sequence[FailedTask]:
        query = select(FailedTask).order_by(FailedTask.failed_at.desc()).limit(limit)
        if kind:
            query = query.where(FailedTask.kind == kind)
        async with self._sessions() as session:
            result = await session.execute(query)
            return result.scalars().all()

    async def count(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(select(func.count()).select_from(FailedTask))
            return result.scalar() or 0

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                delete(FailedTask).where(FailedTask.failed_at < cutoff)
            )
            await session.commit()
        return result.rowcount or 0
