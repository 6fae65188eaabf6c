"""Flow analytics endpoint."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db
from services.analytics_service import AnalyticsService
from services.flow_service import FlowService

router = APIRouter(tags=["analytics"])


@router.get("/{flow_id}", response_model=dict[str, Any])
async def get_flow_analytics(
    flow_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    Run counts by status, delivery and engagement rates, a 30-day daily
    series and per-action-node stats for one flow.
    """
    flow = await FlowService(db).get_or_404(flow_id)
    return await AnalyticsService(db).flow_analytics(flow)
