"""Append-only event log.

The engine appends after every action and condition; the tracking endpoint
appends engagement events. A failed append is logged and swallowed so it
never blocks a run's traversal.
"""

from datetime import datetime
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import TRACKABLE_EVENT_TYPES, EventType
from core.exceptions import CampaignException, ValidationError
from core.utils import safe_serialize, utcnow
from db.models import Event

logger = structlog.get_logger(__name__)


class EventLog:
    """Event sink and history reader backed by the ``events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def append(
        self,
        subject_id: str,
        flow_id: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Event]:
        """Record an event. Returns None if the write failed."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        event = Event(
            subject_id=subject_id,
            flow_id=flow_id,
            type=event_type,
            data=safe_serialize(data or {}),
            timestamp=timestamp or utcnow(),
        )
        try:
            async with self._sessions() as session:
                session.add(event)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to append event",
                subject_id=subject_id,
                flow_id=flow_id,
                event_type=event_type,
                error=str(e),
            )
            return None
        return event

    async def recent(
        self,
        subject_id: str,
        flow_id: str,
        since: datetime,
    ) -> Sequence[Event]:
        """Events for a subject within a flow since ``since``, oldest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Event)
                .where(
                    Event.subject_id == subject_id,
                    Event.flow_id == flow_id,
                    Event.timestamp >= since,
                )
                .order_by(Event.timestamp)
            )
            return result.scalars().all()

    async def for_flow(self, flow_id: str, since: Optional[datetime] = None) -> Sequence[Event]:
        query = select(Event).where(Event.flow_id == flow_id)
        if since is not None:
            query = query.where(Event.timestamp >= since)
        async with self._sessions() as session:
            result = await session.execute(query.order_by(Event.timestamp))
            return result.scalars().all()

    async def track(
        self,
        subject_id: str,
        flow_id: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        """Record an externally observed engagement event.

        Raises:
            ValidationError: If ``event_type`` is not trackable
            CampaignException: If the write failed
        """
        if event_type not in TRACKABLE_EVENT_TYPES:
            raise ValidationError(
                f"Invalid event type '{event_type}'. "
                f"Must be one of: {', '.join(sorted(TRACKABLE_EVENT_TYPES))}"
            )
        event = await self.append(subject_id, flow_id, event_type, data, timestamp)
        if event is None:
            raise CampaignException("Event could not be recorded", 503)
        logger.info("Event tracked", subject_id=subject_id, flow_id=flow_id, event_type=event_type)
        return event
