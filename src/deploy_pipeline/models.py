"""
Runtime records for pipeline runs, artifacts and deployment targets.

These are the mutable/immutable records the engine and rollout controller
operate on. Static definitions (stages, hooks, targets as declared in YAML)
live in ``deploy_pipeline.definitions``.
"""
import copy
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

from .errors import InvalidTransition


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    """Overall status of a pipeline run"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_RUN_STATUSES = {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK}

# Allowed run status transitions; terminal states have none
RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
    RunStatus.ROLLED_BACK: set(),
}


class StageStatus(str, Enum):
    """Status of a single stage within a run"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


TERMINAL_STAGE_STATUSES = {
    StageStatus.SUCCEEDED,
    StageStatus.FAILED,
    StageStatus.SKIPPED,
    StageStatus.ROLLED_BACK,
}


class TriggerOrigin(str, Enum):
    PUSH = "push"
    MANUAL = "manual"


class RolloutState(str, Enum):
    """Rollout controller states"""
    IDLE = "idle"
    PROVISIONING = "provisioning"
    TRAFFIC_SHIFTING = "traffic_shifting"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


# Verifying may go back to TrafficShifting while traffic steps remain
ROLLOUT_TRANSITIONS = {
    RolloutState.IDLE: {RolloutState.PROVISIONING},
    RolloutState.PROVISIONING: {RolloutState.TRAFFIC_SHIFTING, RolloutState.ROLLING_BACK},
    RolloutState.TRAFFIC_SHIFTING: {RolloutState.VERIFYING, RolloutState.ROLLING_BACK},
    RolloutState.VERIFYING: {
        RolloutState.TRAFFIC_SHIFTING,
        RolloutState.PROVISIONING,
        RolloutState.COMPLETE,
        RolloutState.ROLLING_BACK,
    },
    RolloutState.ROLLING_BACK: {RolloutState.ROLLED_BACK},
    RolloutState.COMPLETE: {RolloutState.IDLE},
    RolloutState.ROLLED_BACK: {RolloutState.IDLE},
}


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Trigger:
    """What caused a run: a source revision bound for an environment"""
    source_revision: str
    environment: str
    origin: str = TriggerOrigin.MANUAL.value
    requested_by: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    """Content-addressed build output. Immutable once written."""
    digest: str
    location: str
    run_id: str
    size: int = 0


@dataclass
class StageResult:
    """Outcome of a stage within a run."""
    name: str
    status: str = StageStatus.PENDING.value
    attempts: int = 0
    logs: List[str] = field(default_factory=list)
    output_artifact: Optional[Artifact] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return StageStatus(self.status) in TERMINAL_STAGE_STATUSES


@dataclass
class PipelineRun:
    """A single execution of a pipeline. Mutated only by the pipeline engine."""
    id: str
    pipeline: str
    trigger: Trigger
    stages: List[StageResult]
    status: str = RunStatus.PENDING.value
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def create(cls, pipeline: str, stage_names: List[str], trigger: Trigger) -> "PipelineRun":
        run_id = f"run-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
        return cls(
            id=run_id,
            pipeline=pipeline,
            trigger=trigger,
            stages=[StageResult(name=name) for name in stage_names],
        )

    @property
    def is_terminal(self) -> bool:
        return RunStatus(self.status) in TERMINAL_RUN_STATUSES

    def transition(self, status: RunStatus, error: Optional[str] = None) -> None:
        """Move the run to a new status, enforcing the allowed transitions."""
        current = RunStatus(self.status)
        if status not in RUN_TRANSITIONS[current]:
            raise InvalidTransition(f"Run {self.id}: cannot move from {current.value} to {status.value}")

        self.status = status.value
        if error:
            self.error = error
        if status == RunStatus.RUNNING:
            self.started_at = utc_now()
        if status in TERMINAL_RUN_STATUSES:
            self.completed_at = utc_now()

    def begin_stage(self, index: int) -> StageResult:
        """Mark stage ``index`` as running; all earlier stages must be terminal."""
        if self.is_terminal:
            raise InvalidTransition(f"Run {self.id} is {self.status}; stages can no longer start")

        for earlier in self.stages[:index]:
            if not earlier.is_terminal:
                raise InvalidTransition(
                    f"Run {self.id}: stage {self.stages[index].name} cannot start before "
                    f"{earlier.name} finished ({earlier.status})"
                )

        stage = self.stages[index]
        if stage.status != StageStatus.PENDING.value:
            raise InvalidTransition(f"Run {self.id}: stage {stage.name} already {stage.status}")

        stage.status = StageStatus.RUNNING.value
        stage.started_at = utc_now()
        return stage

    def finish_stage(self, index: int, result: StageResult) -> None:
        """Record the terminal result for stage ``index``."""
        stage = self.stages[index]
        if stage.status != StageStatus.RUNNING.value:
            raise InvalidTransition(f"Run {self.id}: stage {stage.name} is not running")
        if not result.is_terminal:
            raise InvalidTransition(f"Run {self.id}: stage {stage.name} result {result.status} is not terminal")

        stage.status = result.status
        stage.attempts = result.attempts
        stage.logs = list(result.logs)
        stage.output_artifact = result.output_artifact
        stage.error = result.error
        stage.completed_at = utc_now()

    def skip_remaining(self, after_index: int) -> None:
        for stage in self.stages[after_index + 1:]:
            if stage.status == StageStatus.PENDING.value:
                stage.status = StageStatus.SKIPPED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineRun":
        stages = []
        for stage_data in data.get("stages", []):
            stage_data = dict(stage_data)
            artifact = stage_data.get("output_artifact")
            stage_data["output_artifact"] = Artifact(**artifact) if artifact else None
            stages.append(StageResult(**stage_data))

        return cls(
            id=data["id"],
            pipeline=data["pipeline"],
            trigger=Trigger(**data["trigger"]),
            stages=stages,
            status=data.get("status", RunStatus.PENDING.value),
            error=data.get("error"),
            created_at=data.get("created_at") or utc_now(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class Host:
    host_id: str
    address: str
    health_url: Optional[str] = None
    revision: Optional[str] = None


@dataclass
class TargetSnapshot:
    """Prior state of a target, restored atomically on rollback."""
    revision: Optional[str]
    hosts: List[Host]
    weights: Dict[str, int]
    health: str = HealthState.UNKNOWN.value


@dataclass
class RolloutRecord:
    """History of one rollout against a target."""
    target: str
    from_revision: Optional[str]
    to_revision: str
    strategy: str
    run_id: Optional[str] = None
    state: str = RolloutState.IDLE.value
    transitions: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def record(self, state: RolloutState, detail: Optional[str] = None) -> None:
        self.state = state.value
        entry = {"state": state.value, "at": utc_now()}
        if detail:
            entry["detail"] = detail
        self.transitions.append(entry)


@dataclass
class DeploymentTarget:
    """
    Owned record of a deployment target.

    ``revision`` is the live revision pointer. It is only changed by the
    rollout controller while holding the target's lock, and only after
    verification passes.
    """
    name: str
    hosts: List[Host]
    revision: Optional[str] = None
    health: str = HealthState.UNKNOWN.value
    weights: Dict[str, int] = field(default_factory=dict)
    rollout_state: str = RolloutState.IDLE.value
    pending: Optional[TargetSnapshot] = None
    history: List[RolloutRecord] = field(default_factory=list)

    def snapshot(self) -> TargetSnapshot:
        return TargetSnapshot(
            revision=self.revision,
            hosts=copy.deepcopy(self.hosts),
            weights=dict(self.weights),
            health=self.health,
        )

    def restore(self, snapshot: TargetSnapshot) -> None:
        self.revision = snapshot.revision
        self.hosts = copy.deepcopy(snapshot.hosts)
        self.weights = dict(snapshot.weights)
        self.health = snapshot.health

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentTarget":
        pending = data.get("pending")
        if pending:
            pending = TargetSnapshot(
                revision=pending.get("revision"),
                hosts=[Host(**h) for h in pending.get("hosts", [])],
                weights=dict(pending.get("weights", {})),
                health=pending.get("health", HealthState.UNKNOWN.value),
            )

        return cls(
            name=data["name"],
            hosts=[Host(**h) for h in data.get("hosts", [])],
            revision=data.get("revision"),
            health=data.get("health", HealthState.UNKNOWN.value),
            weights=dict(data.get("weights", {})),
            rollout_state=data.get("rollout_state", RolloutState.IDLE.value),
            pending=pending or None,
            history=[RolloutRecord(**r) for r in data.get("history", [])],
        )
