"""Deferred task and permanent failure models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.utils import utcnow
from db.base import BaseModel


class DeferredTask(BaseModel):
    """Durable "resume run R at node N at time T" record.

    Created when a delay node is processed; consumed by the scheduler once
    ``execute_at`` has passed. A run has at most one pending task.

    Attributes:
        run_id: Run to resume
        expected_node_id: Node the run must still sit on for this task to apply
        resume_node_id: Node to continue from
        flow_snapshot: Flow definition captured when the delay was scheduled
        execute_at: When the task becomes due (naive UTC)
        retry_count: Failed resumption attempts so far
        failed: Set when an attempt fails, cleared when the task is
            rescheduled for retry. Failed tasks are never picked up as due.
        last_error: Error from the most recent failed attempt
    """

    __tablename__ = "deferred_tasks"

    run_id: Mapped[str] = mapped_column(nullable=False, unique=True, index=True)
    expected_node_id: Mapped[str] = mapped_column(nullable=False)
    resume_node_id: Mapped[str] = mapped_column(nullable=False)
    flow_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    execute_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    failed: Mapped[bool] = mapped_column(default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class FailedTask(BaseModel):
    """Permanent failure record kept for operator inspection.

    Deferred tasks that exhausted their retries, and start-run jobs that
    failed after their last attempt, land here instead of being dropped.
    """

    __tablename__ = "failed_tasks"

    kind: Mapped[str] = mapped_column(nullable=False, index=True)
    run_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    flow_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    final_error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    total_retries: Mapped[int] = mapped_column(default=0)
    failed_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
