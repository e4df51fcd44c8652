"""
Pipeline engine.

Drives each PipelineRun through its declared stages one at a time. The first
stage that does not succeed ends the run: later stages are skipped, and the
run becomes Failed (or RolledBack when a deploy was rolled back). Exactly one
notification is published per run, when it reaches a terminal status.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from .definitions import PipelineDefinition, Stage, StageKind
from .errors import DefinitionError, InvalidTransition, RollbackFailure
from .executor import StageContext, StageExecutor
from .models import (
    Artifact,
    PipelineRun,
    RolloutState,
    RunStatus,
    StageResult,
    StageStatus,
    Trigger,
    utc_now,
)
from .notifier import Notifier, RunEvent
from .rollout import RolloutController
from .run_store import RunStore
from .utils.decorators import async_log_execution_time

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Creates, executes and cancels pipeline runs."""

    def __init__(
        self,
        pipelines: List[PipelineDefinition],
        executor: StageExecutor,
        controller: RolloutController,
        notifier: Notifier,
        store: RunStore,
    ):
        self.pipelines: Dict[str, PipelineDefinition] = {p.name: p for p in pipelines}
        self.executor = executor
        self.controller = controller
        self.notifier = notifier
        self.store = store
        self._runs: Dict[str, PipelineRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def get_pipeline(self, name: Optional[str] = None) -> PipelineDefinition:
        if name is None:
            if len(self.pipelines) != 1:
                raise DefinitionError(f"Pipeline name required; known pipelines: {sorted(self.pipelines)}")
            return next(iter(self.pipelines.values()))
        if name not in self.pipelines:
            raise DefinitionError(f"Unknown pipeline: {name}")
        return self.pipelines[name]

    def trigger(self, trigger: Trigger, pipeline_name: Optional[str] = None) -> PipelineRun:
        """Create a Pending run for ``trigger``. Deploy targets are checked up front."""
        pipeline = self.get_pipeline(pipeline_name)
        for target in pipeline.deploy_targets(trigger.environment):
            self.controller.registry.get(target)

        run = PipelineRun.create(pipeline.name, pipeline.stage_names, trigger)
        self._runs[run.id] = run
        self.store.save_run(run)
        logger.info(
            f"Created run {run.id} of {pipeline.name} for {trigger.source_revision} "
            f"-> {trigger.environment} ({trigger.origin})"
        )
        return run

    def start(self, run: PipelineRun) -> asyncio.Task:
        """Schedule ``run`` for execution on the running event loop."""
        if run.id in self._tasks:
            raise InvalidTransition(f"Run {run.id} already started")

        task = asyncio.create_task(self.execute(run), name=f"pipeline-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        return task

    def submit(self, trigger: Trigger, pipeline_name: Optional[str] = None) -> PipelineRun:
        run = self.trigger(trigger, pipeline_name)
        self.start(run)
        return run

    def get_run(self, run_id: str) -> PipelineRun:
        if run_id in self._runs:
            return self._runs[run_id]
        return self.store.load_run(run_id)

    def list_runs(self) -> List[PipelineRun]:
        runs = {run.id: run for run in self.store.list_runs()}
        runs.update(self._runs)
        return sorted(runs.values(), key=lambda r: r.created_at, reverse=True)

    async def wait(self, run_id: str) -> PipelineRun:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait([task])
        return self.get_run(run_id)

    async def cancel(self, run_id: str) -> PipelineRun:
        """Cancel a run. A deploy in progress is rolled back before the run ends."""
        run = self.get_run(run_id)
        if run.is_terminal:
            return run

        task = self._tasks.get(run_id)
        if task is None:
            # Created but never started
            self._finish(run, RunStatus.FAILED, "cancelled before start")
            return run

        logger.warning(f"Cancelling run {run_id}")
        task.cancel()
        await asyncio.wait([task])
        if not run.is_terminal:
            # Task was cancelled before it got to run
            self._finish(run, RunStatus.FAILED, "cancelled before start")
        return run

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel active runs and wait for queued notifications."""
        for run_id in list(self._tasks):
            await self.cancel(run_id)
        await self.notifier.drain(timeout=timeout)

    def _save(self, run: PipelineRun) -> None:
        self.store.save_run(run)

    def _finish(self, run: PipelineRun, status: RunStatus, error: Optional[str] = None) -> None:
        run.transition(status, error)
        self._save(run)
        self.notifier.publish(RunEvent.from_run(run))
        log = logger.info if status == RunStatus.SUCCEEDED else logger.error
        log(f"Run {run.id} finished: {status.value}" + (f" ({error})" if error else ""))

    def _resolve_stage(self, stage: Stage, trigger: Trigger) -> Stage:
        if stage.deploy is None or stage.deploy.target:
            return stage
        deploy = stage.deploy.model_copy(update={"target": trigger.environment})
        return stage.model_copy(update={"deploy": deploy})

    @async_log_execution_time
    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Run every stage of ``run`` in declared order and return the terminal run."""
        pipeline = self.get_pipeline(run.pipeline)
        context = StageContext(
            run_id=run.id,
            source_revision=run.trigger.source_revision,
            environment=run.trigger.environment,
        )

        run.transition(RunStatus.RUNNING)
        self._save(run)

        artifact: Optional[Artifact] = None
        status, error = RunStatus.SUCCEEDED, None
        index = -1

        try:
            for index, stage in enumerate(pipeline.stages):
                stage = self._resolve_stage(stage, run.trigger)
                run.begin_stage(index)
                self._save(run)
                logger.info(f"Run {run.id}: stage {index + 1}/{len(pipeline.stages)} {stage.name} started")

                if stage.kind == StageKind.DEPLOY:
                    result = await self._run_deploy(stage, artifact, context)
                else:
                    result = await self.executor.run(stage, artifact, context)

                run.finish_stage(index, result)
                self._save(run)

                if result.status == StageStatus.SUCCEEDED.value:
                    artifact = result.output_artifact or artifact
                    continue

                run.skip_remaining(index)
                status = RunStatus.ROLLED_BACK if result.status == StageStatus.ROLLED_BACK.value else RunStatus.FAILED
                error = f"Stage {stage.name} {result.status}: {result.error}"
                break

        except asyncio.CancelledError:
            stage_status = self._cancelled_stage_status(run, pipeline, index)
            if stage_status == StageStatus.SUCCEEDED:
                # The rollout completed before the cancel landed
                self._abort_stage(run, index, stage_status, None)
                if index == len(pipeline.stages) - 1:
                    self._finish(run, RunStatus.SUCCEEDED)
                else:
                    self._finish(run, RunStatus.FAILED, "cancelled")
                raise

            self._abort_stage(run, index, stage_status, "cancelled")
            status = RunStatus.ROLLED_BACK if stage_status == StageStatus.ROLLED_BACK else RunStatus.FAILED
            self._finish(run, status, "cancelled")
            raise

        except Exception as e:
            logger.exception(f"Run {run.id} crashed in stage {index}")
            self._abort_stage(run, index, StageStatus.FAILED, f"internal error: {e}")
            self._finish(run, RunStatus.FAILED, f"internal error: {e}")
            return run

        self._finish(run, status, error)
        return run

    def _abort_stage(self, run: PipelineRun, index: int, status: StageStatus, error: Optional[str]) -> None:
        if 0 <= index < len(run.stages) and run.stages[index].status == StageStatus.RUNNING.value:
            stage = run.stages[index]
            logs = self.executor.log_sink.read(run.id, stage.name)
            run.finish_stage(index, StageResult(
                name=stage.name,
                status=status.value,
                attempts=max(stage.attempts, 1),
                logs=logs,
                error=error,
            ))
        run.skip_remaining(max(index, -1))

    def _cancelled_stage_status(self, run: PipelineRun, pipeline: PipelineDefinition, index: int) -> StageStatus:
        """Status of a stage interrupted by cancellation.

        A deploy stage takes the state of this run's rollout: succeeded once it
        completed, rolled back once it was rolled back, failed otherwise.
        """
        if not 0 <= index < len(pipeline.stages):
            return StageStatus.FAILED
        stage = self._resolve_stage(pipeline.stages[index], run.trigger)
        if stage.kind != StageKind.DEPLOY:
            return StageStatus.FAILED

        target = self.controller.registry.get(stage.deploy.target)
        for record in reversed(target.history):
            if record.run_id == run.id:
                if record.state == RolloutState.COMPLETE.value:
                    return StageStatus.SUCCEEDED
                if record.state == RolloutState.ROLLED_BACK.value:
                    return StageStatus.ROLLED_BACK
                break
        return StageStatus.FAILED

    async def _run_deploy(self, stage: Stage, artifact: Optional[Artifact], context: StageContext) -> StageResult:
        result = StageResult(name=stage.name, status=StageStatus.RUNNING.value, attempts=1, started_at=utc_now())
        try:
            record = await self.controller.deploy(stage, context.source_revision, context)
        except RollbackFailure as e:
            result.status = StageStatus.FAILED.value
            result.error = str(e)
            result.logs = self.executor.log_sink.read(context.run_id, stage.name)
            result.completed_at = utc_now()
            return result

        result.logs = [
            f"{t['at']} {t['state']}" + (f" {t['detail']}" if t.get("detail") else "")
            for t in record.transitions
        ]
        result.logs.extend(self.executor.log_sink.read(context.run_id, stage.name))
        result.output_artifact = artifact
        result.completed_at = utc_now()

        if record.state == RolloutState.COMPLETE.value:
            result.status = StageStatus.SUCCEEDED.value
        else:
            result.status = StageStatus.ROLLED_BACK.value
            result.error = record.error
        return result
