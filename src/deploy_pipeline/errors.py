"""Exception taxonomy for pipeline runs, stages and rollouts."""
from typing import Optional


class PipelineError(Exception):
    """Base class for all orchestrator errors"""
    pass


class DefinitionError(PipelineError):
    """Raised when a pipeline or target definition is invalid"""
    pass


class InvalidTransition(PipelineError):
    """Raised for an illegal run or rollout state change"""
    pass


class RunNotFound(PipelineError):
    """Raised when a pipeline run id is unknown"""
    pass


class ArtifactNotFound(PipelineError):
    """Raised when an artifact digest is not present in the store"""
    pass


class StageFailure(PipelineError):
    """Base class for failures raised while executing a stage"""

    def __init__(self, message: str, stage_name: Optional[str] = None,
                 exit_code: Optional[int] = None):
        super().__init__(message)
        self.stage_name = stage_name
        self.exit_code = exit_code


class TransientStageFailure(StageFailure):
    """A command exited non-zero; the attempt may be retried"""
    pass


class PermanentStageFailure(StageFailure):
    """A stage failed after exhausting its retries; aborts the run"""
    pass


class StageTimeout(PermanentStageFailure):
    """A stage attempt exceeded its timeout and was killed; never retried"""
    pass


class RolloutFailure(PipelineError):
    """Base class for failures that force a rollout into RollingBack"""
    pass


class HealthCheckTimeout(RolloutFailure):
    """Verification did not complete before the timeout"""
    pass


class DeployTimeout(RolloutFailure):
    """The deploy stage ran past its timeout"""
    pass


class HealthCheckFailed(RolloutFailure):
    """A health poll reported unhealthy during verification"""
    pass


class HookExecutionFailure(RolloutFailure):
    """A deployment lifecycle hook exited non-zero or timed out"""

    def __init__(self, message: str, hook: Optional[str] = None,
                 exit_code: Optional[int] = None):
        super().__init__(message)
        self.hook = hook
        self.exit_code = exit_code


class RollbackFailure(RolloutFailure):
    """The backend could not restore the pre-rollout snapshot; the target stays RollingBack"""
    pass


class NotificationDeliveryFailure(PipelineError):
    """A subscriber could not receive an event; logged and retried, never fatal"""
    pass
