"""Engagement event tracking endpoint."""

from fastapi import APIRouter, Depends, status

from api.schemas.event import EventResponse, TrackEventRequest
from app.dependencies import get_runtime
from app.runtime import CampaignRuntime
from core.utils import to_naive_utc

router = APIRouter(tags=["events"])


@router.post("/track", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def track_event(
    request: TrackEventRequest,
    runtime: CampaignRuntime = Depends(get_runtime),
) -> EventResponse:
    """
    Record an open, click, conversion or other engagement event.

    Condition nodes read these when a run reaches them. Event types the
    engine writes itself (``action_dispatched``, ``completed``, ...) are
    rejected with 422.
    """
    event = await runtime.events.track(
        subject_id=request.subject_id,
        flow_id=request.flow_id,
        event_type=request.type,
        data=request.data,
        timestamp=to_naive_utc(request.timestamp) if request.timestamp else None,
    )
    return EventResponse.model_validate(event)
