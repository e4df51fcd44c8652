"""
Pipeline run and target state persistence.

Every run and target is kept as one JSON document so the final status and
per-stage logs of a run stay available after the process exits.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import RunNotFound
from .models import DeploymentTarget, PipelineRun

logger = logging.getLogger(__name__)


class RunStore:
    """Stores runs under ``<state_dir>/runs`` and targets under ``<state_dir>/targets``."""

    def __init__(self, state_dir: Union[str, Path] = ".pipeline_state"):
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"
        self.targets_dir = self.state_dir / "targets"
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.targets_dir.mkdir(parents=True, exist_ok=True)

    def _write_json(self, path: Path, data: dict) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def save_run(self, run: PipelineRun) -> None:
        self._write_json(self.runs_dir / f"{run.id}.json", run.to_dict())

    def load_run(self, run_id: str) -> PipelineRun:
        path = self.runs_dir / f"{run_id}.json"
        if not path.exists():
            raise RunNotFound(f"Pipeline run not found: {run_id}")

        with open(path, "r") as f:
            return PipelineRun.from_dict(json.load(f))

    def list_runs(self, pipeline: Optional[str] = None) -> List[PipelineRun]:
        """List stored runs, newest first."""
        runs = []
        for path in self.runs_dir.glob("*.json"):
            try:
                with open(path, "r") as f:
                    run = PipelineRun.from_dict(json.load(f))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"⚠️ Skipping unreadable run file {path.name}: {e}")
                continue
            if pipeline is None or run.pipeline == pipeline:
                runs.append(run)

        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def save_target(self, target: DeploymentTarget) -> None:
        self._write_json(self.targets_dir / f"{target.name}.json", target.to_dict())

    def load_target(self, name: str) -> Optional[DeploymentTarget]:
        path = self.targets_dir / f"{name}.json"
        if not path.exists():
            return None

        with open(path, "r") as f:
            return DeploymentTarget.from_dict(json.load(f))

    def load_targets(self) -> Dict[str, DeploymentTarget]:
        targets = {}
        for path in self.targets_dir.glob("*.json"):
            with open(path, "r") as f:
                target = DeploymentTarget.from_dict(json.load(f))
            targets[target.name] = target
        return targets
