"""Run model: one execution of a flow for one subject."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import RunStatus
from core.utils import utcnow
from db.base import BaseModel


class Run(BaseModel):
    """Durable state of one subject's walk through a flow.

    ``current_node_id`` is the state of the run's state machine. It only
    changes through conditional updates keyed on the expected current node,
    so two workers can never both advance the same run.

    Attributes:
        flow_id: Flow being executed
        subject_id: Subject (recipient) the run is for
        subject_context: Recipient data handed to the delivery collaborator
        current_node_id: Node the run currently sits on
        status: active, completed, errored or cancelled
        started_at: When the run was created
        last_processed_at: Last successful transition
        transitions: Number of node-to-node moves so far; identifies a visit
        completed_at: Set when an end node (or implicit completion) is reached
        last_error: Most recent processing error, if any
    """

    __tablename__ = "runs"

    flow_id: Mapped[str] = mapped_column(
        ForeignKey("flows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subject_id: Mapped[str] = mapped_column(nullable=False, index=True)
    subject_context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    current_node_id: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(default=RunStatus.ACTIVE.value, index=True)
    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    last_processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    transitions: Mapped[int] = mapped_column(default=0)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("flow_id", "subject_id", name="uq_runs_flow_subject"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == RunStatus.ACTIVE.value
