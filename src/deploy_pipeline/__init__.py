"""
Deploy Pipeline

A continuous-delivery orchestrator: sequential stage execution with retries,
content-addressed artifacts, health-gated blue/green and rolling rollouts,
and terminal-state notifications.
"""

from .engine import PipelineEngine
from .executor import StageExecutor
from .health import HealthChecker, HttpHealthChecker
from .notifier import Notifier, RunEvent
from .rollout import RolloutController
from .service import build_engine

__all__ = [
    'PipelineEngine', 'build_engine',
    'StageExecutor',
    'HealthChecker', 'HttpHealthChecker',
    'Notifier', 'RunEvent',
    'RolloutController',
]
