from typing import Optional

from fastapi import APIRouter, Query, Request, status

from deploy_pipeline.engine import PipelineEngine
from deploy_pipeline.models import Trigger, TriggerOrigin
from deploy_pipeline.schemas import CreateRunRequest, PushEvent, RunListResponse, RunResponse

router = APIRouter()


def _engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


@router.post("/runs", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_run(request: Request, body: CreateRunRequest):
    """Trigger a pipeline run for an explicit source revision and environment."""
    trigger = Trigger(
        source_revision=body.source_revision,
        environment=body.environment,
        origin=TriggerOrigin.MANUAL.value,
        requested_by=body.requested_by,
    )
    run = _engine(request).submit(trigger, body.pipeline)
    return RunResponse.from_run(run)


@router.post("/webhooks/push", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def source_push(
    request: Request,
    event: PushEvent,
    environment: Optional[str] = Query(None, description="Target environment (defaults to the pushed branch)"),
    pipeline: Optional[str] = Query(None),
):
    """
    Trigger a run from a source push event.

    The pushed revision becomes the run's source revision; the environment
    defaults to the branch name.
    """
    trigger = Trigger(
        source_revision=event.after,
        environment=environment or event.branch,
        origin=TriggerOrigin.PUSH.value,
        requested_by=event.pusher.get("name"),
    )
    run = _engine(request).submit(trigger, pipeline)
    return RunResponse.from_run(run)


@router.get("/runs", response_model=RunListResponse)
async def list_runs(request: Request, limit: int = Query(20, ge=1, le=200)):
    runs = _engine(request).list_runs()[:limit]
    return RunListResponse(runs=[RunResponse.from_run(run, include_logs=False) for run in runs])


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(request: Request, run_id: str):
    """Final or current status of a run, with per-stage logs."""
    return RunResponse.from_run(_engine(request).get_run(run_id))


@router.post("/runs/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(request: Request, run_id: str):
    """Cancel a run; an in-progress deploy is rolled back first."""
    run = await _engine(request).cancel(run_id)
    return RunResponse.from_run(run)
