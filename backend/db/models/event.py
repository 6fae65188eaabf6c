"""Event model: append-only facts about a subject."""

from datetime import datetime

from sqlalchemy import JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.utils import utcnow
from db.base import BaseModel


class Event(BaseModel):
    """Immutable, timestamped fact about a subject within a flow.

    Written by the engine after each action and condition, and by the
    tracking endpoint for engagement (opens, clicks, conversions). Never
    updated or deleted by the engine.
    """

    __tablename__ = "events"

    subject_id: Mapped[str] = mapped_column(nullable=False)
    flow_id: Mapped[str] = mapped_column(nullable=False)
    type: Mapped[str] = mapped_column(nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        Index("ix_events_subject_flow_time", "subject_id", "flow_id", "timestamp"),
        Index("ix_events_flow_type", "flow_id", "type"),
    )
