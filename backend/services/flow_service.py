"""Flow service: creating, editing and scheduling flows."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from campaign.graph import ValidationResult, validate_flow
from core.constants import FlowStatus
from core.exceptions import ConflictError, FlowValidationError, NotFoundError
from core.utils import to_naive_utc
from db.models.flow import Flow
from services.base import BaseService

logger = logging.getLogger(__name__)


class FlowService(BaseService[Flow]):
    """Service for flow management."""

    def __init__(self, db: AsyncSession):
        super().__init__(Flow, db)

    @staticmethod
    def validate(definition: dict) -> ValidationResult:
        return validate_flow(definition)

    def _require_valid(self, definition: dict) -> ValidationResult:
        result = validate_flow(definition)
        if not result.valid:
            raise FlowValidationError(result.error, result.warnings)
        return result

    async def create_flow(
        self,
        name: str,
        definition: dict,
        description: str = "",
        audience: Optional[list[dict]] = None,
    ) -> Flow:
        """Create a draft flow. The definition must validate."""
        self._require_valid(definition)
        flow = await self.create({
            "name": name,
            "description": description,
            "definition": definition,
            "audience": audience or [],
            "status": FlowStatus.DRAFT.value,
            "version": 1,
        })
        logger.info(f"Flow created: {flow.id} ({name})")
        return flow

    async def get_or_404(self, flow_id: str) -> Flow:
        flow = await self.get_by_id(flow_id)
        if not flow:
            raise NotFoundError(f"Flow {flow_id} not found")
        return flow

    async def update_definition(self, flow_id: str, definition: dict) -> Flow:
        """Replace the definition and bump the version.

        Runs already in progress keep the snapshot their deferred tasks
        captured.
        """
        flow = await self.get_or_404(flow_id)
        self._require_valid(definition)
        return await self.update(flow_id, {
            "definition": definition,
            "version": flow.version + 1,
        })

    async def set_audience(self, flow_id: str, audience: list[dict]) -> Flow:
        for member in audience:
            if not member.get("subject_id"):
                raise FlowValidationError("Every audience member needs a subject_id")
        await self.get_or_404(flow_id)
        return await self.update(flow_id, {"audience": audience})

    async def schedule(self, flow_id: str, scheduled_at: datetime) -> Flow:
        """Schedule a draft or paused flow for promotion at ``scheduled_at``."""
        flow = await self.get_or_404(flow_id)
        if flow.status not in (FlowStatus.DRAFT.value, FlowStatus.PAUSED.value, FlowStatus.SCHEDULED.value):
            raise ConflictError(f"Flow in status '{flow.status}' cannot be scheduled")
        self._require_valid(flow.definition)
        logger.info(f"Flow {flow_id} scheduled for {scheduled_at.isoformat()}")
        return await self.update(flow_id, {
            "status": FlowStatus.SCHEDULED.value,
            "scheduled_at": to_naive_utc(scheduled_at),
        })

    async def activate(self, flow_id: str) -> Flow:
        """Mark a flow active so runs can be started for it on demand."""
        flow = await self.get_or_404(flow_id)
        self._require_valid(flow.definition)
        return await self.update(flow_id, {"status": FlowStatus.ACTIVE.value})

    async def pause(self, flow_id: str) -> Flow:
        await self.get_or_404(flow_id)
        return await self.update(flow_id, {"status": FlowStatus.PAUSED.value})
