"""Run status and listing schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class RunResponse(BaseModel):
    """Run information response."""

    id: str = Field(description="Run ID")
    flow_id: str = Field(description="Flow ID")
    subject_id: str = Field(description="Subject the run is for")
    subject_context: dict[str, Any] = Field(default_factory=dict)
    current_node_id: str = Field(description="Node the run sits on")
    status: str = Field(description="Run status (active, completed, errored, cancelled)")
    started_at: datetime
    last_processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    resume_at: Optional[datetime] = Field(
        default=None, description="When a suspended run's pending delay falls due"
    )

    class Config:
        from_attributes = True


class RunListResponse(BaseModel):
    runs: list[RunResponse]
    total: int
    page: int
    per_page: int


class RunEventResponse(BaseModel):
    """One entry of a run's event history."""

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    class Config:
        from_attributes = True
