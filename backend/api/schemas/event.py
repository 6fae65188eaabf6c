"""Engagement event tracking schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class TrackEventRequest(BaseModel):
    """An engagement event observed outside the engine (open, click, purchase)."""

    subject_id: str = Field(min_length=1)
    flow_id: str = Field(min_length=1)
    type: str = Field(description="action_opened, action_clicked, conversion, page_view or custom")
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = Field(default=None, description="Defaults to the time of receipt")


class EventResponse(BaseModel):
    id: str
    subject_id: str
    flow_id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    class Config:
        from_attributes = True
