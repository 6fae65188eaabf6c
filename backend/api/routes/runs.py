"""Run endpoints: status, event history and cancellation."""

from fastapi import APIRouter, Depends

from api.schemas.common import ErrorResponse
from api.schemas.run import RunEventResponse, RunResponse
from app.dependencies import get_runtime
from app.runtime import CampaignRuntime
from core.exceptions import ConflictError, NotFoundError
from db.models.run import Run

router = APIRouter(tags=["runs"], responses={404: {"model": ErrorResponse}})


async def _load_run(runtime: CampaignRuntime, run_id: str) -> Run:
    run = await runtime.runs.get(run_id)
    if run is None:
        raise NotFoundError(f"Run {run_id} not found")
    return run


async def _to_response(runtime: CampaignRuntime, run: Run) -> RunResponse:
    response = RunResponse.model_validate(run)
    task = await runtime.deferred.pending_for_run(run.id)
    if task is not None:
        response.resume_at = task.execute_at
    return response


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    runtime: CampaignRuntime = Depends(get_runtime),
) -> RunResponse:
    """
    Get a run's current node, status and last error.
    """
    run = await _load_run(runtime, run_id)
    return await _to_response(runtime, run)


@router.get("/{run_id}/events", response_model=list[RunEventResponse])
async def get_run_events(
    run_id: str,
    runtime: CampaignRuntime = Depends(get_runtime),
) -> list[RunEventResponse]:
    """
    The subject's event history within the run's flow, oldest first.
    """
    run = await _load_run(runtime, run_id)
    events = await runtime.events.recent(run.subject_id, run.flow_id, since=run.started_at)
    return [RunEventResponse.model_validate(event) for event in events]


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: str,
    runtime: CampaignRuntime = Depends(get_runtime),
) -> RunResponse:
    """
    Cancel an active run and drop its pending delay, if any.
    """
    await _load_run(runtime, run_id)
    if not await runtime.engine.cancel_run(run_id):
        raise ConflictError(f"Run {run_id} is not active")
    return await _to_response(runtime, await _load_run(runtime, run_id))
