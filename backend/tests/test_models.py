"""Tests for database models: defaults and constraints."""

import pytest
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import IntegrityError


@pytest.mark.integration
class TestFlowModel:

    async def test_create_flow(self, db_session):
        from db.models.flow import Flow

        flow = Flow(name="Welcome", definition={"nodes": [], "edges": []})
        db_session.add(flow)
        await db_session.flush()

        assert flow.id is not None
        assert flow.created_at is not None
        assert flow.status == "draft"
        assert flow.version == 1
        assert flow.audience == []


@pytest.mark.integration
class TestRunModel:

    async def _flow(self, db_session):
        from db.models.flow import Flow

        flow = Flow(id=str(uuid4()), name="Welcome", definition={})
        db_session.add(flow)
        await db_session.flush()
        return flow

    async def test_create_run(self, db_session):
        from db.models.run import Run

        flow = await self._flow(db_session)
        run = Run(flow_id=flow.id, subject_id="sub-1", current_node_id="start")
        db_session.add(run)
        await db_session.flush()

        assert run.status == "active"
        assert run.is_active is True
        assert run.started_at is not None
        assert run.subject_context == {}

    async def test_one_run_per_flow_and_subject(self, db_session):
        from db.models.run import Run

        flow = await self._flow(db_session)
        db_session.add(Run(flow_id=flow.id, subject_id="sub-1", current_node_id="start"))
        await db_session.flush()

        db_session.add(Run(flow_id=flow.id, subject_id="sub-1", current_node_id="start"))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()


@pytest.mark.integration
class TestEventModel:

    async def test_create_event(self, db_session):
        from db.models.event import Event

        event = Event(subject_id="sub-1", flow_id="flow-1", type="action_opened")
        db_session.add(event)
        await db_session.flush()

        assert event.data == {}
        assert isinstance(event.timestamp, datetime)


@pytest.mark.integration
class TestDeferredTaskModel:

    async def test_create_task(self, db_session):
        from db.models.deferred_task import DeferredTask

        task = DeferredTask(
            run_id="run-1",
            expected_node_id="wait",
            resume_node_id="check",
            flow_snapshot={"nodes": [], "edges": []},
            execute_at=datetime(2025, 1, 8, 9, 0, 0),
        )
        db_session.add(task)
        await db_session.flush()

        assert task.retry_count == 0
        assert task.failed is False
        assert task.last_error is None

    async def test_one_pending_task_per_run(self, db_session):
        from db.models.deferred_task import DeferredTask

        for _ in range(2):
            db_session.add(DeferredTask(
                run_id="run-1",
                expected_node_id="wait",
                resume_node_id="check",
                execute_at=datetime(2025, 1, 8, 9, 0, 0),
            ))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    async def test_failed_task_defaults(self, db_session):
        from db.models.deferred_task import FailedTask

        record = FailedTask(kind="job", flow_id="flow-1", subject_id="sub-1")
        db_session.add(record)
        await db_session.flush()

        assert record.total_retries == 0
        assert record.final_error == ""
        assert record.failed_at is not None
