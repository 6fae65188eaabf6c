"""Flow endpoints: validate a definition, start and list runs, simulate a journey."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.schemas.common import ErrorResponse, PaginationParams
from api.schemas.flow import (
    FlowValidateRequest,
    FlowValidationResponse,
    SimulateRequest,
    StartRunRequest,
    StartRunResponse,
)
from api.schemas.run import RunListResponse, RunResponse
from app.dependencies import get_db, get_job_queue, get_runtime
from app.runtime import CampaignRuntime
from campaign.jobs import JobQueue
from campaign.simulator import simulate_journey
from core.constants import FlowStatus, RunStatus
from core.exceptions import ConflictError, FlowValidationError
from core.utils import calculate_offset, to_naive_utc
from services.flow_service import FlowService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["flows"], responses={404: {"model": ErrorResponse}})

# A run can only be started for a flow that is not paused or finished
_STARTABLE = {
    FlowStatus.DRAFT.value,
    FlowStatus.SCHEDULED.value,
    FlowStatus.QUEUED.value,
    FlowStatus.ACTIVE.value,
}


@router.post("/validate", response_model=FlowValidationResponse)
async def validate_flow_definition(request: FlowValidateRequest) -> FlowValidationResponse:
    """
    Check a flow definition without saving it.

    Always returns 200; ``valid`` is false and ``error`` names the first
    problem when the graph is malformed. Warnings flag recoverable issues
    such as a condition without a true/false label.
    """
    result = FlowService.validate(request.definition)
    return FlowValidationResponse(**result.to_dict())


@router.post(
    "/{flow_id}/runs",
    response_model=StartRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_run(
    flow_id: str,
    request: StartRunRequest,
    queue: JobQueue = Depends(get_job_queue),
    db: AsyncSession = Depends(get_db),
) -> StartRunResponse:
    """
    Queue a start-run job for one subject.

    Starting the same subject twice is harmless: a subject has one run per
    flow and a repeated job finds it already in progress.
    """
    flow = await FlowService(db).get_or_404(flow_id)
    if flow.status not in _STARTABLE:
        raise ConflictError(f"Flow in status '{flow.status}' cannot start runs")

    check = FlowService.validate(flow.definition)
    if not check.valid:
        raise FlowValidationError(check.error, check.warnings)

    job_id = await queue.enqueue_start_run(flow.id, request.subject_id, request.subject_context)
    logger.info(f"Start-run job {job_id} queued for flow {flow.id}, subject {request.subject_id}")
    return StartRunResponse(job_id=job_id, flow_id=flow.id, subject_id=request.subject_id)


@router.get("/{flow_id}/runs", response_model=RunListResponse)
async def list_runs(
    flow_id: str,
    run_status: Optional[RunStatus] = Query(default=None, alias="status"),
    pagination: PaginationParams = Depends(),
    runtime: CampaignRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> RunListResponse:
    """
    List a flow's runs, newest first (paginated, optionally by status).
    """
    await FlowService(db).get_or_404(flow_id)
    runs, total = await runtime.runs.list_for_flow(
        flow_id,
        status=run_status.value if run_status else None,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return RunListResponse(
        runs=[RunResponse.model_validate(run) for run in runs],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/{flow_id}/simulate", response_model=dict[str, Any])
async def simulate_flow(
    flow_id: str,
    request: SimulateRequest,
    runtime: CampaignRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    Walk the flow for a hypothetical subject.

    Nothing is delivered or persisted. Delays move a virtual clock forward
    and the subject's behaviour decides each condition.
    """
    flow = await FlowService(db).get_or_404(flow_id)
    result = simulate_journey(
        flow.definition,
        behavior=request.behavior,
        start_at=to_naive_utc(request.start_at) if request.start_at else None,
        max_steps=runtime.settings.MAX_STEPS_PER_JOB,
        lookback_days=runtime.settings.CONDITION_LOOKBACK_DAYS,
    )
    return {"flow_id": flow.id, **result.to_dict()}
