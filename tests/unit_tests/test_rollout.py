import asyncio

import pytest

from deploy_pipeline.definitions import Hook
from deploy_pipeline.errors import RollbackFailure
from deploy_pipeline.executor import StageContext
from deploy_pipeline.health import StaticHealthChecker
from deploy_pipeline.models import Host, RolloutState
from deploy_pipeline.rollout import RolloutController
from deploy_pipeline.targets import TargetRegistry
from tests.consts import NEW_REVISION, OLD_REVISION, TEST_ENVIRONMENT
from tests.fixtures.pipeline_fixtures import (
    BarrierHealthChecker,
    FlakyRestoreBackend,
    GatedBackend,
    make_deploy_stage,
    make_target,
    wait_for_rollout_state,
    write_script,
)


def _states(record):
    return [t["state"] for t in record.transitions]


def _weight_calls(backend, target=TEST_ENVIRONMENT):
    return [weights for call, name, weights in backend.calls if call == "set_weights" and name == target]


async def test_blue_green_success_flips_revision_once(controller, registry, backend, health_checker, context):
    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)
    target = registry.get(TEST_ENVIRONMENT)

    assert record.state == RolloutState.COMPLETE.value
    assert _states(record) == [
        "provisioning", "traffic_shifting", "verifying", "traffic_shifting", "verifying", "complete",
    ]
    assert target.revision == NEW_REVISION
    assert target.rollout_state == RolloutState.COMPLETE.value
    assert target.pending is None
    assert target.weights == {NEW_REVISION: 100}
    assert [h.host_id for h in target.hosts] == ["staging-1-rev-new", "staging-2-rev-new"]
    assert all(h.revision == NEW_REVISION for h in target.hosts)
    # Traffic steps 50% then 100%; the pointer stays on the old revision while verifying
    assert _weight_calls(backend) == [{NEW_REVISION: 50, OLD_REVISION: 50}, {NEW_REVISION: 100}]
    assert health_checker.seen_revisions == [OLD_REVISION] * 4
    assert backend.released[TEST_ENVIRONMENT] == ["staging-1", "staging-2"]


async def test_blue_green_failure_at_half_traffic_rolls_back(controller, registry, backend, context):
    controller.health_checker = StaticHealthChecker([True, False])

    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)
    target = registry.get(TEST_ENVIRONMENT)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert _states(record)[-2:] == ["rolling_back", "rolled_back"]
    assert "unhealthy" in record.error
    assert target.revision == OLD_REVISION
    assert [h.host_id for h in target.hosts] == ["staging-1", "staging-2"]
    assert target.weights == {OLD_REVISION: 100}
    assert target.pending is None
    assert _weight_calls(backend)[-1] == {OLD_REVISION: 100}
    assert backend.released[TEST_ENVIRONMENT] == ["staging-1-rev-new", "staging-2-rev-new"]


async def test_failure_after_last_step_still_rolls_back(controller, registry, context):
    controller.health_checker = StaticHealthChecker([True, True, True, False])

    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION


async def test_rollback_without_pending_rollout_is_noop(controller, registry, backend, context):
    await controller.deploy(make_deploy_stage(), NEW_REVISION, context)
    calls = list(backend.calls)

    assert await controller.rollback(TEST_ENVIRONMENT) is False
    assert await controller.rollback(TEST_ENVIRONMENT) is False

    assert backend.calls == calls
    assert registry.get(TEST_ENVIRONMENT).revision == NEW_REVISION


async def test_rollback_after_rollback_is_noop(controller, registry, backend, context):
    controller.health_checker = StaticHealthChecker([False])
    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)
    calls = list(backend.calls)
    transitions = list(record.transitions)

    assert await controller.rollback(TEST_ENVIRONMENT) is False

    assert backend.calls == calls
    assert record.transitions == transitions


async def test_same_revision_is_a_noop(controller, registry, backend, health_checker, context):
    record = await controller.deploy(make_deploy_stage(), OLD_REVISION, context)

    assert record.state == RolloutState.COMPLETE.value
    assert backend.calls == []
    assert health_checker.calls == 0
    assert registry.get(TEST_ENVIRONMENT).history[-1] is record


async def test_rolling_replaces_hosts_in_batches(controller, registry, backend, context):
    stage = make_deploy_stage(strategy="rolling", batch_size=1)

    record = await controller.deploy(stage, NEW_REVISION, context)
    target = registry.get(TEST_ENVIRONMENT)

    assert record.state == RolloutState.COMPLETE.value
    assert _states(record) == [
        "provisioning", "traffic_shifting", "verifying",
        "provisioning", "traffic_shifting", "verifying",
        "complete",
    ]
    assert [h.host_id for h in target.hosts] == ["staging-1", "staging-2"]
    assert all(h.revision == NEW_REVISION for h in target.hosts)
    assert _weight_calls(backend) == [{NEW_REVISION: 50, OLD_REVISION: 50}, {NEW_REVISION: 100}]
    assert not any(call == "provision" for call, _, _ in backend.calls)
    assert target.revision == NEW_REVISION


async def test_rolling_failure_restores_replaced_hosts(controller, registry, backend, context):
    controller.health_checker = StaticHealthChecker([True, True, False])
    stage = make_deploy_stage(strategy="rolling", batch_size=1)

    record = await controller.deploy(stage, NEW_REVISION, context)
    target = registry.get(TEST_ENVIRONMENT)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert target.revision == OLD_REVISION
    assert all(h.revision == OLD_REVISION for h in target.hosts)
    assert ("install", TEST_ENVIRONMENT, ("staging-1", OLD_REVISION)) in backend.calls
    assert ("install", TEST_ENVIRONMENT, ("staging-2", OLD_REVISION)) in backend.calls
    assert _weight_calls(backend)[-1] == {OLD_REVISION: 100}


async def test_hooks_run_in_lifecycle_order(controller, registry, context, tmp_path):
    order_file = tmp_path / "order"
    hooks = {
        name: Hook(path=str(write_script(tmp_path, f"{name}.sh", f'echo "{name} $DEPLOY_HOST" >> {order_file}')))
        for name in ("stop", "pre_install", "post_install", "start")
    }
    stage = make_deploy_stage(hooks=hooks)

    record = await controller.deploy(stage, NEW_REVISION, context)

    assert record.state == RolloutState.COMPLETE.value
    assert order_file.read_text().splitlines() == [
        "stop staging-1-rev-new", "pre_install staging-1-rev-new",
        "post_install staging-1-rev-new", "start staging-1-rev-new",
        "stop staging-2-rev-new", "pre_install staging-2-rev-new",
        "post_install staging-2-rev-new", "start staging-2-rev-new",
    ]


async def test_hook_failure_rolls_back(controller, registry, health_checker, context, tmp_path):
    script = write_script(tmp_path, "post_install.sh", "exit 7")
    stage = make_deploy_stage(hooks={"post_install": Hook(path=str(script))})

    record = await controller.deploy(stage, NEW_REVISION, context)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert "post_install" in record.error
    assert health_checker.calls == 0
    assert registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION


async def test_deploy_timeout_rolls_back(controller, registry, context):
    controller.health_checker = StaticHealthChecker(default=True, delay=0.2)
    stage = make_deploy_stage(timeout=0.3, healthy_threshold=5)

    record = await controller.deploy(stage, NEW_REVISION, context)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert registry.get(TEST_ENVIRONMENT).revision == OLD_REVISION


async def test_cancellation_mid_rollout_rolls_back(controller, registry, context):
    controller.health_checker = StaticHealthChecker(default=True, delay=30)
    target = registry.get(TEST_ENVIRONMENT)

    task = asyncio.create_task(controller.deploy(make_deploy_stage(), NEW_REVISION, context))
    await wait_for_rollout_state(target, RolloutState.VERIFYING.value)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert target.revision == OLD_REVISION
    assert target.pending is None
    assert target.rollout_state == RolloutState.ROLLED_BACK.value
    assert target.history[-1].state == RolloutState.ROLLED_BACK.value
    assert [h.host_id for h in target.hosts] == ["staging-1", "staging-2"]
    assert not registry.lock_for(TEST_ENVIRONMENT).locked()


async def test_interrupted_rollout_is_recovered_before_next_deploy(controller, registry, backend, context):
    target = registry.get(TEST_ENVIRONMENT)
    target.pending = target.snapshot()
    target.rollout_state = RolloutState.VERIFYING.value
    target.hosts.append(Host(host_id="staging-1-stale", address="10.0.0.9", revision="rev-stale"))

    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    assert "staging-1-stale" in backend.released[TEST_ENVIRONMENT]
    assert record.from_revision == OLD_REVISION
    assert record.state == RolloutState.COMPLETE.value
    assert target.revision == NEW_REVISION


async def test_same_target_rollouts_are_serialized(controller, registry, context):
    controller.health_checker = StaticHealthChecker(default=True, delay=0.01)
    stage = make_deploy_stage()

    first, second = await asyncio.gather(
        controller.deploy(stage, "rev-a", context),
        controller.deploy(stage, "rev-b", context),
    )

    assert first.state == second.state == RolloutState.COMPLETE.value
    assert first.from_revision == OLD_REVISION
    assert second.from_revision == "rev-a"
    assert registry.get(TEST_ENVIRONMENT).revision == "rev-b"


async def test_disjoint_targets_roll_out_concurrently(backend, executor, rollout_config, run_store):
    registry = TargetRegistry(
        {"staging": make_target("staging"), "production": make_target("production")},
        store=run_store,
    )
    # Each verification blocks until both targets are verifying at once
    controller = RolloutController(registry, backend, BarrierHealthChecker(parties=2), executor, rollout_config)

    staging, production = await asyncio.wait_for(
        asyncio.gather(
            controller.deploy(make_deploy_stage("staging"), NEW_REVISION,
                              StageContext("run-a", NEW_REVISION, "staging")),
            controller.deploy(make_deploy_stage("production"), NEW_REVISION,
                              StageContext("run-b", NEW_REVISION, "production")),
        ),
        timeout=10,
    )

    assert staging.state == RolloutState.COMPLETE.value
    assert production.state == RolloutState.COMPLETE.value
    assert registry.get("staging").revision == NEW_REVISION
    assert registry.get("production").revision == NEW_REVISION


async def test_target_state_is_persisted(controller, run_store, context):
    await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    persisted = run_store.load_target(TEST_ENVIRONMENT)

    assert persisted.revision == NEW_REVISION
    assert persisted.pending is None
    assert persisted.history[-1].state == RolloutState.COMPLETE.value


async def test_release_failure_does_not_undo_completed_rollout(controller, registry, backend, context):
    async def broken_release(target, hosts):
        raise RuntimeError("control plane unavailable")

    backend.release = broken_release

    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    assert record.state == RolloutState.COMPLETE.value
    assert "not released" in record.error
    assert registry.get(TEST_ENVIRONMENT).revision == NEW_REVISION


def _assert_restored(target):
    assert target.revision == OLD_REVISION
    assert target.pending is None
    assert target.rollout_state == RolloutState.ROLLED_BACK.value
    assert target.weights == {OLD_REVISION: 100}
    assert [h.host_id for h in target.hosts] == ["staging-1", "staging-2"]


async def test_cancel_during_failure_rollback_lets_rollback_finish(registry, executor, rollout_config, context):
    backend = GatedBackend("set_weights", gate_weights={OLD_REVISION: 100})
    controller = RolloutController(registry, backend, StaticHealthChecker([False]), executor, rollout_config)
    target = registry.get(TEST_ENVIRONMENT)

    task = asyncio.create_task(controller.deploy(make_deploy_stage(), NEW_REVISION, context))
    await asyncio.wait_for(backend.entered.wait(), timeout=5)
    assert target.rollout_state == RolloutState.ROLLING_BACK.value

    task.cancel()
    await asyncio.sleep(0.05)
    assert not task.done()

    backend.proceed.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    _assert_restored(target)
    assert backend.released[TEST_ENVIRONMENT] == ["staging-1-rev-new", "staging-2-rev-new"]
    assert target.history[-1].state == RolloutState.ROLLED_BACK.value
    assert not registry.lock_for(TEST_ENVIRONMENT).locked()


async def test_cancel_during_recovery_lets_recovery_finish(registry, executor, rollout_config, context):
    backend = GatedBackend("release")
    controller = RolloutController(registry, backend, StaticHealthChecker(), executor, rollout_config)
    target = registry.get(TEST_ENVIRONMENT)
    target.pending = target.snapshot()
    target.rollout_state = RolloutState.VERIFYING.value
    target.hosts.append(Host(host_id="staging-1-stale", address="10.0.0.9", revision="rev-stale"))

    task = asyncio.create_task(controller.deploy(make_deploy_stage(), NEW_REVISION, context))
    await asyncio.wait_for(backend.entered.wait(), timeout=5)
    task.cancel()
    await asyncio.sleep(0.05)
    backend.proceed.set()

    with pytest.raises(asyncio.CancelledError):
        await task

    _assert_restored(target)
    assert backend.released[TEST_ENVIRONMENT] == ["staging-1-stale"]


async def test_transient_backend_error_during_rollback_is_retried(registry, executor, rollout_config, context):
    backend = FlakyRestoreBackend({OLD_REVISION: 100}, failures=2)
    controller = RolloutController(registry, backend, StaticHealthChecker([False]), executor, rollout_config)

    record = await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    assert record.state == RolloutState.ROLLED_BACK.value
    assert backend.restore_attempts == 3
    _assert_restored(registry.get(TEST_ENVIRONMENT))


async def test_failed_rollback_is_reported_and_can_be_finished_later(registry, executor, rollout_config,
                                                                       run_store, context):
    backend = FlakyRestoreBackend({OLD_REVISION: 100}, failures=99)
    controller = RolloutController(registry, backend, StaticHealthChecker([False]), executor, rollout_config)
    target = registry.get(TEST_ENVIRONMENT)

    with pytest.raises(RollbackFailure, match="incomplete"):
        await controller.deploy(make_deploy_stage(), NEW_REVISION, context)

    record = target.history[-1]
    assert backend.restore_attempts == rollout_config.restore_attempts
    assert record.state == RolloutState.ROLLING_BACK.value
    assert "unhealthy" in record.error
    assert "control plane unavailable" in record.error
    assert target.rollout_state == RolloutState.ROLLING_BACK.value
    assert target.pending is not None
    assert run_store.load_target(TEST_ENVIRONMENT).pending is not None
    assert not registry.lock_for(TEST_ENVIRONMENT).locked()

    backend.failures = 0
    assert await controller.rollback(TEST_ENVIRONMENT) is True

    _assert_restored(target)
    assert record.state == RolloutState.ROLLED_BACK.value
