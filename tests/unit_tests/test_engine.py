import asyncio

import pytest

from deploy_pipeline.definitions import PipelineDefinition, Stage
from deploy_pipeline.errors import DefinitionError, InvalidTransition
from deploy_pipeline.health import StaticHealthChecker
from deploy_pipeline.models import RolloutState, RunStatus, StageStatus, Trigger, TriggerOrigin
from deploy_pipeline.notifier import CallbackSubscriber
from deploy_pipeline.service import build_engine
from tests.consts import NEW_REVISION, OLD_REVISION, TEST_ENVIRONMENT
from tests.fixtures.pipeline_fixtures import (
    FlakyRestoreBackend,
    GatedBackend,
    make_deploy_stage,
    wait_for_rollout_state,
)


def _trigger(environment=TEST_ENVIRONMENT, revision=NEW_REVISION) -> Trigger:
    return Trigger(source_revision=revision, environment=environment, origin=TriggerOrigin.PUSH.value)


async def _run_to_end(engine, trigger=None, pipeline_name=None):
    run = engine.trigger(trigger or _trigger(), pipeline_name)
    await engine.start(run)
    await engine.notifier.drain(timeout=5)
    return run


async def test_successful_run(engine, recorder):
    run = await _run_to_end(engine)

    assert run.status == RunStatus.SUCCEEDED.value
    assert [s.status for s in run.stages] == ["succeeded"] * 3
    assert all(s.attempts == 1 for s in run.stages)
    assert f"built {NEW_REVISION}" in run.stages[0].logs
    assert run.stages[0].output_artifact is not None
    assert run.stages[2].output_artifact == run.stages[0].output_artifact
    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == NEW_REVISION
    assert [e.status for e in recorder.for_run(run.id)] == ["succeeded"]


async def test_stages_run_one_at_a_time_in_order(engine):
    run = await _run_to_end(engine)

    for earlier, later in zip(run.stages, run.stages[1:]):
        assert earlier.completed_at <= later.started_at


async def test_failed_stage_skips_the_rest(engine, pipeline, recorder, backend):
    stages = list(pipeline.stages)
    stages[1] = Stage(name="test", kind="test", commands=["echo failing", "exit 1"], retry_count=1)
    engine.pipelines["web-app"] = PipelineDefinition(name="web-app", stages=stages)

    run = await _run_to_end(engine)

    assert run.status == RunStatus.FAILED.value
    assert [s.status for s in run.stages] == ["succeeded", "failed", "skipped"]
    assert run.stages[1].attempts == 2
    assert "Stage test failed" in run.error
    assert backend.calls == []
    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION
    assert [e.status for e in recorder.for_run(run.id)] == ["failed"]


async def test_rolled_back_deploy_ends_run_rolled_back(engine, recorder):
    engine.controller.health_checker = StaticHealthChecker([True, False])

    run = await _run_to_end(engine)

    assert run.status == RunStatus.ROLLED_BACK.value
    assert run.stages[2].status == StageStatus.ROLLED_BACK.value
    assert "unhealthy" in run.stages[2].error
    assert any("rolled_back" in line for line in run.stages[2].logs)
    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION
    assert [e.status for e in recorder.for_run(run.id)] == ["rolled_back"]


async def test_failing_subscriber_does_not_block_run(engine, recorder):
    attempts = []

    def broken(event):
        attempts.append(event.run_id)
        raise ConnectionError("subscriber down")

    engine.notifier.subscribe(CallbackSubscriber(broken, name="broken"))

    run = await _run_to_end(engine)

    assert run.status == RunStatus.SUCCEEDED.value
    assert len(attempts) == engine.notifier.max_attempts
    assert len(engine.notifier.failures) == 1
    assert [e.status for e in recorder.for_run(run.id)] == ["succeeded"]


async def test_cancel_during_deploy_rolls_back(engine, recorder):
    engine.controller.health_checker = StaticHealthChecker(default=True, delay=30)
    target = engine.controller.registry.get(TEST_ENVIRONMENT)

    run = engine.trigger(_trigger())
    engine.start(run)
    await wait_for_rollout_state(target, RolloutState.VERIFYING.value)

    cancelled = await engine.cancel(run.id)
    await engine.notifier.drain(timeout=5)

    assert cancelled is run
    assert run.status == RunStatus.ROLLED_BACK.value
    assert run.stages[2].status == StageStatus.ROLLED_BACK.value
    assert target.revision == OLD_REVISION
    assert target.pending is None
    assert [e.status for e in recorder.for_run(run.id)] == ["rolled_back"]


async def test_cancel_during_build_fails_run(engine, pipeline, recorder):
    stages = list(pipeline.stages)
    stages[0] = Stage(name="build", commands=["echo started", "sleep 30"])
    engine.pipelines["web-app"] = PipelineDefinition(name="web-app", stages=stages)

    run = engine.trigger(_trigger())
    engine.start(run)

    async def _build_running():
        while "started" not in engine.executor.log_sink.read(run.id, "build"):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_build_running(), timeout=5)
    await engine.cancel(run.id)
    await engine.notifier.drain(timeout=5)

    assert run.status == RunStatus.FAILED.value
    assert run.error == "cancelled"
    assert [s.status for s in run.stages] == ["failed", "skipped", "skipped"]
    assert "started" in run.stages[0].logs
    assert [e.status for e in recorder.for_run(run.id)] == ["failed"]


async def test_cancel_before_start(engine, recorder):
    run = engine.trigger(_trigger())

    await engine.cancel(run.id)
    await engine.notifier.drain(timeout=5)

    assert run.status == RunStatus.FAILED.value
    assert run.error == "cancelled before start"
    assert [e.status for e in recorder.for_run(run.id)] == ["failed"]


async def test_cancel_finished_run_is_noop(engine, recorder):
    run = await _run_to_end(engine)

    await engine.cancel(run.id)
    await engine.notifier.drain(timeout=5)

    assert run.status == RunStatus.SUCCEEDED.value
    assert len(recorder.for_run(run.id)) == 1


async def test_run_cannot_be_started_twice(engine):
    run = engine.trigger(_trigger())
    task = engine.start(run)

    with pytest.raises(InvalidTransition):
        engine.start(run)
    await task


async def test_unknown_environment_rejected_at_trigger(engine):
    with pytest.raises(DefinitionError, match="Unknown deployment target"):
        engine.trigger(_trigger(environment="nowhere"))


async def test_disjoint_environments_run_concurrently(engine, recorder):
    staging = engine.submit(_trigger(environment="staging"))
    production = engine.submit(_trigger(environment="production"))

    await asyncio.wait_for(asyncio.gather(engine.wait(staging.id), engine.wait(production.id)), timeout=20)

    assert staging.status == production.status == RunStatus.SUCCEEDED.value
    assert engine.controller.registry.get("production").revision == NEW_REVISION


async def test_run_and_logs_are_persisted(engine, settings):
    run = await _run_to_end(engine)

    stored = engine.store.load_run(run.id)

    assert stored.status == RunStatus.SUCCEEDED.value
    assert stored.stages[1].logs == run.stages[1].logs
    assert "tests passed" in stored.stages[1].logs
    assert engine.get_run(run.id) is run
    assert [r.id for r in engine.list_runs()] == [run.id]


async def test_pipeline_name_required_with_several_pipelines(pipeline, targets, settings, backend,
                                                             health_checker, notifier):
    other = PipelineDefinition(name="api", stages=[Stage(name="build", commands=["true"])])
    engine = build_engine([pipeline, other], targets, settings=settings, backend=backend,
                          health_checker=health_checker, notifier=notifier)

    with pytest.raises(DefinitionError, match="Pipeline name required"):
        engine.trigger(_trigger())

    run = await _run_to_end(engine, pipeline_name="api")
    assert run.pipeline == "api"
    assert run.status == RunStatus.SUCCEEDED.value


async def test_explicit_deploy_target_overrides_environment(engine):
    engine.pipelines["web-app"] = PipelineDefinition(
        name="web-app",
        stages=[make_deploy_stage(target="production")],
    )

    run = await _run_to_end(engine, _trigger(environment=TEST_ENVIRONMENT))

    assert run.status == RunStatus.SUCCEEDED.value
    assert engine.controller.registry.get("production").revision == NEW_REVISION
    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION


async def test_shutdown_cancels_active_runs(engine):
    engine.controller.health_checker = StaticHealthChecker(default=True, delay=30)
    run = engine.submit(_trigger())
    await wait_for_rollout_state(engine.controller.registry.get(TEST_ENVIRONMENT), RolloutState.VERIFYING.value)

    await engine.shutdown(timeout=5)

    assert run.is_terminal
    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION


async def test_failed_rollback_fails_run_with_explicit_error(engine, recorder):
    engine.controller.backend = FlakyRestoreBackend({OLD_REVISION: 100}, failures=99)
    engine.controller.health_checker = StaticHealthChecker([False])

    run = await _run_to_end(engine)
    target = engine.controller.registry.get(TEST_ENVIRONMENT)

    assert run.status == RunStatus.FAILED.value
    assert run.stages[2].status == StageStatus.FAILED.value
    assert "rollback of staging to rev-old incomplete" in run.stages[2].error
    assert "internal error" not in run.error
    assert target.rollout_state == RolloutState.ROLLING_BACK.value
    assert [e.status for e in recorder.for_run(run.id)] == ["failed"]


async def test_cancel_after_rollout_completed_keeps_deploy_succeeded(engine, recorder):
    backend = GatedBackend("release")
    engine.controller.backend = backend

    run = engine.submit(_trigger())
    await asyncio.wait_for(backend.entered.wait(), timeout=5)
    await engine.cancel(run.id)
    await engine.notifier.drain(timeout=5)

    assert engine.controller.registry.get(TEST_ENVIRONMENT).revision == NEW_REVISION
    assert run.stages[2].status == StageStatus.SUCCEEDED.value
    assert run.stages[2].error is None
    assert run.status == RunStatus.SUCCEEDED.value
    assert [e.status for e in recorder.for_run(run.id)] == ["succeeded"]
