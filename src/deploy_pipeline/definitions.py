"""
Pipeline and target definitions.

Definitions are loaded from YAML and validated with pydantic. They are
static: a loaded ``Stage`` is frozen and never mutated while a run executes.
"""
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DefinitionError
from .models import DeploymentTarget, Host

logger = logging.getLogger(__name__)

# Stage names become log file names and scratch directory prefixes
STAGE_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"


class StageKind(str, Enum):
    SOURCE = "source"
    BUILD = "build"
    TEST = "test"
    DEPLOY = "deploy"


class DeployStrategy(str, Enum):
    BLUE_GREEN = "blue_green"
    ROLLING = "rolling"


class HookName(str, Enum):
    """Lifecycle hooks in the order they run around an install"""
    STOP = "stop"
    PRE_INSTALL = "pre_install"
    POST_INSTALL = "post_install"
    START = "start"


class Hook(BaseModel):
    """An external executable run at a lifecycle point of a deploy."""
    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Executable to run")
    args: List[str] = Field(default_factory=list)
    timeout: float = Field(default=60.0, gt=0, description="Seconds before the hook is killed")
    run_as: Optional[str] = Field(default=None, description="User the hook runs as")


class DeployConfig(BaseModel):
    """Deploy block of a deploy-kind stage."""
    model_config = ConfigDict(frozen=True)

    target: Optional[str] = Field(default=None, description="Target name; defaults to the trigger environment")
    strategy: DeployStrategy = DeployStrategy.BLUE_GREEN
    hooks: Dict[HookName, Hook] = Field(default_factory=dict)
    batch_size: int = Field(default=1, ge=1, description="Hosts replaced per batch (rolling)")
    traffic_step_percent: Optional[int] = Field(default=None, ge=1, le=100)
    traffic_step_interval: Optional[float] = Field(default=None, ge=0)
    healthy_threshold: Optional[int] = Field(default=None, ge=1)
    verify_timeout: Optional[float] = Field(default=None, gt=0)


class Stage(BaseModel):
    """
    Static definition of a pipeline stage.

    ``retry_count`` is the number of retries after the first attempt, so a
    stage runs at most ``retry_count + 1`` times.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, pattern=STAGE_NAME_PATTERN)
    kind: StageKind = StageKind.BUILD
    commands: List[str] = Field(default_factory=list)
    timeout: float = Field(default=600.0, gt=0)
    retry_count: int = Field(default=0, ge=0)
    artifacts: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    deploy: Optional[DeployConfig] = None

    @model_validator(mode="after")
    def check_deploy_block(self):
        if self.kind == StageKind.DEPLOY and self.deploy is None:
            raise ValueError(f"Stage '{self.name}' is a deploy stage but has no deploy block")
        if self.kind != StageKind.DEPLOY and self.deploy is not None:
            raise ValueError(f"Stage '{self.name}' has a deploy block but kind is {self.kind.value}")
        if self.kind != StageKind.DEPLOY and not self.commands:
            raise ValueError(f"Stage '{self.name}' has no commands")
        return self


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    stages: List[Stage] = Field(..., min_length=1)

    @field_validator("stages")
    @classmethod
    def unique_stage_names(cls, stages):
        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {duplicates}")
        return stages

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def deploy_targets(self, environment: str) -> List[str]:
        return [stage.deploy.target or environment for stage in self.stages if stage.deploy]


class HostDefinition(BaseModel):
    id: str
    address: str
    health_url: Optional[str] = None


class TargetDefinition(BaseModel):
    hosts: List[HostDefinition] = Field(..., min_length=1)
    revision: Optional[str] = None

    def to_target(self, name: str) -> DeploymentTarget:
        hosts = [
            Host(host_id=h.id, address=h.address, health_url=h.health_url, revision=self.revision)
            for h in self.hosts
        ]
        weights = {self.revision: 100} if self.revision else {}
        return DeploymentTarget(name=name, hosts=hosts, revision=self.revision, weights=weights)


def _read_yaml(path: Union[str, Path]) -> dict:
    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"Definition file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(f"{path} must contain a mapping at the top level")
    return data


def parse_pipeline(data: dict) -> PipelineDefinition:
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition: {e}") from e


def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """Load and validate a pipeline definition file."""
    pipeline = parse_pipeline(_read_yaml(path))
    logger.info(f"Loaded pipeline '{pipeline.name}' with {len(pipeline.stages)} stages from {path}")
    return pipeline


def parse_targets(data: dict) -> Dict[str, DeploymentTarget]:
    targets_data = data.get("targets", data)
    targets = {}
    for name, target_data in targets_data.items():
        try:
            definition = TargetDefinition.model_validate(target_data)
        except ValidationError as e:
            raise DefinitionError(f"Invalid target '{name}': {e}") from e
        targets[name] = definition.to_target(name)
    return targets


def load_targets(path: Union[str, Path]) -> Dict[str, DeploymentTarget]:
    """Load deployment targets keyed by name."""
    targets = parse_targets(_read_yaml(path))
    logger.info(f"Loaded {len(targets)} deployment targets from {path}")
    return targets
