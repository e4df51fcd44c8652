"""Wires settings, definitions and components into a ready-to-use PipelineEngine."""
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import ArtifactStore, get_artifact_store
from .definitions import PipelineDefinition
from .engine import PipelineEngine
from .executor import StageExecutor, StageLogSink
from .health import HealthChecker, HttpHealthChecker
from .models import DeploymentTarget
from .notifier import Notifier
from .rollout import RolloutConfig, RolloutController
from .run_store import RunStore
from .settings import Settings, get_settings
from .targets import DeploymentBackend, LocalBackend, TargetRegistry

logger = logging.getLogger(__name__)


def build_engine(
    pipelines: List[PipelineDefinition],
    targets: Optional[Dict[str, DeploymentTarget]] = None,
    settings: Optional[Settings] = None,
    backend: Optional[DeploymentBackend] = None,
    health_checker: Optional[HealthChecker] = None,
    notifier: Optional[Notifier] = None,
    store: Optional[ArtifactStore] = None,
    hooks_dir: Optional[Path] = None,
) -> PipelineEngine:
    """Build a PipelineEngine; components not passed in are created from settings."""
    settings = settings or get_settings()
    run_store = RunStore(settings.state_dir)
    registry = TargetRegistry(targets, store=run_store)

    executor = StageExecutor(
        store=store or get_artifact_store(settings),
        log_sink=StageLogSink(settings.log_dir),
        retry_backoff=settings.retry_backoff_seconds,
        hooks_dir=hooks_dir,
    )
    controller = RolloutController(
        registry=registry,
        backend=backend or LocalBackend(),
        health_checker=health_checker or HttpHealthChecker(settings.health_request_timeout),
        executor=executor,
        config=RolloutConfig.from_settings(settings),
    )

    logger.info(
        f"Engine ready: {len(pipelines)} pipelines, targets {registry.names()}, "
        f"{settings.artifact_backend} artifacts, mode {settings.deployment_mode}"
    )
    return PipelineEngine(
        pipelines=pipelines,
        executor=executor,
        controller=controller,
        notifier=notifier or Notifier.from_settings(settings),
        store=run_store,
    )
