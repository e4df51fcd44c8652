from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import PipelineRun


class CreateRunRequest(BaseModel):
    """Request model for explicitly triggering a pipeline run"""
    source_revision: str = Field(..., min_length=1, description="Source revision to build and deploy")
    environment: str = Field(..., min_length=1, description="Target environment")
    pipeline: Optional[str] = Field(None, description="Pipeline name (optional when only one is loaded)")
    requested_by: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "source_revision": "9f2c1e7",
                "environment": "production",
            }
        }
    )


class PushEvent(BaseModel):
    """Source push payload; only the fields the orchestrator needs"""
    ref: str = Field(..., description="Pushed ref, e.g. refs/heads/main")
    after: str = Field(..., min_length=1, description="Revision the ref now points to")
    repository: Dict[str, Any] = Field(default_factory=dict)
    pusher: Dict[str, Any] = Field(default_factory=dict)

    @property
    def branch(self) -> str:
        return self.ref.rsplit("/", 1)[-1]


class StageResultResponse(BaseModel):
    name: str
    status: str
    attempts: int
    logs: List[str] = Field(default_factory=list)
    output_artifact: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class RunResponse(BaseModel):
    id: str
    pipeline: str
    status: str
    source_revision: str
    environment: str
    origin: str
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    stages: List[StageResultResponse] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: PipelineRun, include_logs: bool = True) -> "RunResponse":
        data = run.to_dict()
        stages = []
        for stage in data["stages"]:
            if not include_logs:
                stage["logs"] = []
            stages.append(StageResultResponse(**stage))

        return cls(
            id=run.id,
            pipeline=run.pipeline,
            status=run.status,
            source_revision=run.trigger.source_revision,
            environment=run.trigger.environment,
            origin=run.trigger.origin,
            error=run.error,
            created_at=run.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            stages=stages,
        )


class RunListResponse(BaseModel):
    runs: List[RunResponse]
