"""Scheduler status and manual tick endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from app.dependencies import get_scheduler
from campaign.scheduler import Scheduler

router = APIRouter(tags=["scheduler"])


@router.get("/status", response_model=dict[str, Any])
async def scheduler_status(scheduler: Scheduler = Depends(get_scheduler)) -> dict[str, Any]:
    """
    Polling loop state plus scheduled flows, pending, overdue and failed tasks.
    """
    return await scheduler.status()


@router.post("/tick", response_model=dict[str, Any])
async def run_tick(scheduler: Scheduler = Depends(get_scheduler)) -> dict[str, Any]:
    """
    Run one scheduling pass now: promote due flows and resume due delays.
    """
    return await scheduler.tick()
