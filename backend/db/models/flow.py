"""Flow model for the campaign execution engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import FlowStatus
from db.base import BaseModel


class Flow(BaseModel):
    """A campaign flow: a graph of nodes and edges plus its audience.

    Attributes:
        id: Unique identifier (UUID string)
        name: Flow name
        description: Flow description
        definition: Graph JSON ``{"nodes": [...], "edges": [...]}``
        version: Definition version, bumped on every edit
        status: Lifecycle status (draft, scheduled, queued, active, paused, completed)
        scheduled_at: When the scheduler should promote the flow (naive UTC)
        audience: Subjects to start on promotion, ``[{"subject_id", "context"}]``
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "flows"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    definition: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(default=FlowStatus.DRAFT.value, index=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True, index=True)
    audience: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
