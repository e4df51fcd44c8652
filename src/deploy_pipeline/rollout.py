"""
Rollout controller.

Drives a deploy stage through Provisioning -> TrafficShifting -> Verifying
-> Complete, or RollingBack -> RolledBack on any failure, timeout or
cancellation. Blue/green stands the new revision up on fresh hosts and
shifts traffic in steps; rolling replaces hosts in batches. In both cases
each traffic change is verified by the health checker before the next one,
and the target's revision pointer flips exactly once, after the last
verification passes.

All mutation of a target happens while holding its lock in the
``TargetRegistry``. Rollback restores the snapshot taken before
provisioning and is a no-op when there is nothing pending. Once started, a
rollback runs to the end even if the rollout is cancelled meanwhile; backend
calls made while restoring are retried, and a restore that still fails
leaves the snapshot pending and raises RollbackFailure.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .definitions import DeployConfig, DeployStrategy, HookName, Stage
from .errors import DeployTimeout, InvalidTransition, RollbackFailure, RolloutFailure
from .executor import StageContext, StageExecutor
from .health import HealthChecker
from .models import (
    DeploymentTarget,
    HealthState,
    Host,
    RolloutRecord,
    RolloutState,
    ROLLOUT_TRANSITIONS,
)
from .settings import Settings
from .targets import DeploymentBackend, TargetRegistry
from .utils.decorators import async_log_execution_time, async_retry

logger = logging.getLogger(__name__)

MAX_HISTORY = 20

PRE_INSTALL_HOOKS = (HookName.STOP, HookName.PRE_INSTALL)
POST_INSTALL_HOOKS = (HookName.POST_INSTALL, HookName.START)


@dataclass
class RolloutConfig:
    traffic_step_percent: int = 25
    traffic_step_interval: float = 10.0
    healthy_threshold: int = 3
    health_poll_interval: float = 5.0
    verify_timeout: float = 120.0
    restore_attempts: int = 3
    restore_backoff: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RolloutConfig":
        return cls(
            traffic_step_percent=settings.traffic_step_percent,
            traffic_step_interval=settings.traffic_step_interval,
            healthy_threshold=settings.healthy_threshold,
            health_poll_interval=settings.health_poll_interval,
            verify_timeout=settings.verify_timeout,
            restore_attempts=settings.rollback_max_attempts,
            restore_backoff=settings.rollback_backoff_seconds,
        )

    def merged(self, deploy: DeployConfig) -> "RolloutConfig":
        """Apply the per-stage overrides of a deploy block."""
        overrides = {
            name: getattr(deploy, name)
            for name in ("traffic_step_percent", "traffic_step_interval", "healthy_threshold", "verify_timeout")
            if getattr(deploy, name) is not None
        }
        return replace(self, **overrides)

    def traffic_steps(self) -> List[int]:
        step = self.traffic_step_percent
        return list(range(step, 100, step)) + [100]


class RolloutController:
    """Sequences rollouts against deployment targets."""

    def __init__(
        self,
        registry: TargetRegistry,
        backend: DeploymentBackend,
        health_checker: HealthChecker,
        executor: StageExecutor,
        config: Optional[RolloutConfig] = None,
    ):
        self.registry = registry
        self.backend = backend
        self.health_checker = health_checker
        self.executor = executor
        self.config = config or RolloutConfig()

    @async_log_execution_time
    async def deploy(self, stage: Stage, revision: str, context: StageContext) -> RolloutRecord:
        """Roll ``revision`` out to the stage's target.

        Returns the rollout record; its state is ``complete`` or
        ``rolled_back`` (with ``error`` set). Cancellation rolls the target
        back before the CancelledError propagates. Raises RollbackFailure when
        the backend cannot restore the previous revision.
        """
        deploy = stage.deploy
        config = self.config.merged(deploy)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + stage.timeout

        async with self.registry.locked(deploy.target) as target:
            await self._recover(target)

            record = RolloutRecord(
                target=target.name,
                from_revision=target.revision,
                to_revision=revision,
                strategy=deploy.strategy.value,
                run_id=context.run_id,
            )
            target.history.append(record)
            del target.history[:-MAX_HISTORY]

            if target.revision == revision:
                record.record(RolloutState.COMPLETE, f"{target.name} already at {revision}")
                self.registry.save(target)
                logger.info(f"{target.name} already at {revision}; nothing to roll out")
                return record

            if target.rollout_state != RolloutState.IDLE.value:
                target.rollout_state = RolloutState.IDLE.value
            target.pending = target.snapshot()
            logger.info(
                f"Rolling out {revision} to {target.name} ({deploy.strategy.value}), "
                f"previous revision {target.revision}"
            )

            try:
                if deploy.strategy == DeployStrategy.ROLLING:
                    await self._rolling(target, record, revision, deploy, config, context, stage.name, deadline)
                else:
                    await self._blue_green(target, record, revision, deploy, config, context, stage.name, deadline)
            except asyncio.CancelledError:
                logger.warning(f"Rollout of {revision} to {target.name} cancelled in {target.rollout_state}")
                with contextlib.suppress(RollbackFailure):
                    await self._roll_back_to_completion(target, record, "rollout cancelled")
                raise
            except RolloutFailure as e:
                logger.error(f"Rollout of {revision} to {target.name} failed: {e}")
                await self._roll_back_to_completion(target, record, str(e))
            except Exception as e:
                logger.exception(f"Unexpected error rolling out {revision} to {target.name}")
                await self._roll_back_to_completion(target, record, f"unexpected rollout error: {e}")

            return record

    async def rollback(self, target_name: str, reason: str = "manual rollback") -> bool:
        """Roll back any pending rollout on ``target_name``.

        Returns False (and changes nothing) when no rollout is pending.
        """
        async with self.registry.locked(target_name) as target:
            record = target.history[-1] if target.history else None
            return await self._roll_back_to_completion(target, record, reason)

    def _transition(self, target: DeploymentTarget, record: Optional[RolloutRecord],
                    state: RolloutState, detail: Optional[str] = None) -> None:
        current = RolloutState(target.rollout_state)
        if state not in ROLLOUT_TRANSITIONS[current]:
            raise InvalidTransition(f"{target.name}: cannot move rollout from {current.value} to {state.value}")

        target.rollout_state = state.value
        if record is not None:
            record.record(state, detail)
        self.registry.save(target)
        logger.info(f"{target.name}: {current.value} -> {state.value}" + (f" ({detail})" if detail else ""))

    async def _recover(self, target: DeploymentTarget) -> None:
        """Roll back a rollout left pending by an interrupted process."""
        if target.pending is None:
            return
        logger.warning(f"{target.name} has an interrupted rollout in {target.rollout_state}; rolling it back")
        record = target.history[-1] if target.history else None
        await self._roll_back_to_completion(target, record, "interrupted rollout")

    async def _roll_back_to_completion(self, target: DeploymentTarget, record: Optional[RolloutRecord],
                                       reason: str) -> bool:
        """Run a rollback that cancellation cannot interrupt.

        A cancel arriving while the snapshot is being restored is held until the
        restore finishes (or fails) and is re-raised afterwards.
        """
        restore = asyncio.ensure_future(self._roll_back(target, record, reason))
        cancelled = False
        while not restore.done():
            try:
                await asyncio.wait([restore])
            except asyncio.CancelledError:
                cancelled = True

        if cancelled:
            if not restore.cancelled():
                # Retrieve any RollbackFailure; _roll_back has already recorded it
                restore.exception()
            raise asyncio.CancelledError()
        return restore.result()

    async def _bounded(self, coro, deadline: float, what: str):
        """Await ``coro`` but fail with DeployTimeout once the deploy deadline passes."""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            coro.close()
            raise DeployTimeout(f"Deploy timed out before {what}")
        try:
            return await asyncio.wait_for(coro, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise DeployTimeout(f"Deploy timed out during {what}") from e

    async def _install_host(self, target: DeploymentTarget, host: Host, revision: str, deploy: DeployConfig,
                            context: StageContext, stage_name: str, deadline: float) -> Host:
        for name in PRE_INSTALL_HOOKS:
            await self._run_hook(name, target, host, revision, deploy, context, stage_name, deadline)

        host = await self._bounded(self.backend.install(target, host, revision), deadline,
                                   f"install on {host.host_id}")

        for name in POST_INSTALL_HOOKS:
            await self._run_hook(name, target, host, revision, deploy, context, stage_name, deadline)
        return host

    async def _run_hook(self, name: HookName, target: DeploymentTarget, host: Host, revision: str,
                        deploy: DeployConfig, context: StageContext, stage_name: str, deadline: float) -> None:
        hook = deploy.hooks.get(name)
        if hook is None:
            return
        await self._bounded(
            self.executor.run_hook(name, hook, context, stage_name, target.name, revision, host),
            deadline,
            f"{name.value} hook on {host.host_id}",
        )

    async def _shift(self, target: DeploymentTarget, record: RolloutRecord, revision: str,
                     percent: int, deadline: float) -> None:
        self._transition(target, record, RolloutState.TRAFFIC_SHIFTING, f"{percent}% to {revision}")
        weights: Dict[str, int] = {revision: percent}
        previous = target.pending.revision
        if previous and percent < 100:
            weights[previous] = 100 - percent
        await self._bounded(self.backend.set_weights(target, weights), deadline, "traffic shift")
        target.weights = weights
        self.registry.save(target)

    async def _verify(self, target: DeploymentTarget, record: RolloutRecord, hosts: List[Host],
                      config: RolloutConfig, deadline: float) -> None:
        self._transition(target, record, RolloutState.VERIFYING,
                         f"{config.healthy_threshold} consecutive healthy polls")
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise DeployTimeout(f"Deploy timed out before verifying {target.name}")

        try:
            await self.health_checker.wait_until_healthy(
                target,
                threshold=config.healthy_threshold,
                interval=config.health_poll_interval,
                timeout=min(config.verify_timeout, remaining),
                hosts=hosts,
            )
        except RolloutFailure:
            target.health = HealthState.UNHEALTHY.value
            raise
        target.health = HealthState.HEALTHY.value

    async def _pause(self, seconds: float, deadline: float) -> None:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise DeployTimeout("Deploy timed out between traffic steps")
        await asyncio.sleep(min(seconds, remaining))

    def _complete(self, target: DeploymentTarget, record: RolloutRecord, hosts: List[Host], revision: str) -> None:
        # Single synchronous step: pointer, hosts and weights change together
        target.hosts = hosts
        target.revision = revision
        target.weights = {revision: 100}
        target.pending = None
        self._transition(target, record, RolloutState.COMPLETE, f"{target.name} now at {revision}")

    async def _blue_green(self, target: DeploymentTarget, record: RolloutRecord, revision: str,
                          deploy: DeployConfig, config: RolloutConfig, context: StageContext,
                          stage_name: str, deadline: float) -> None:
        self._transition(target, record, RolloutState.PROVISIONING, "blue/green")
        blue = list(target.hosts)
        provisioned = await self._bounded(self.backend.provision(target, blue, revision), deadline, "provisioning")
        # Track green hosts on the target right away so rollback can release them
        target.hosts = blue + provisioned
        self.registry.save(target)

        green = []
        for host in provisioned:
            installed = await self._install_host(target, host, revision, deploy, context, stage_name, deadline)
            target.hosts[target.hosts.index(host)] = installed
            green.append(installed)

        for i, percent in enumerate(config.traffic_steps()):
            if i > 0:
                await self._pause(config.traffic_step_interval, deadline)
            await self._shift(target, record, revision, percent, deadline)
            await self._verify(target, record, green, config, deadline)

        self._complete(target, record, green, revision)

        try:
            await self._bounded(self.backend.release(target, blue), deadline, "releasing old hosts")
        except Exception as e:
            # Traffic is fully on green; blue hosts are idle and can be reclaimed later
            logger.error(f"Failed to release old hosts on {target.name}: {e}")
            record.error = f"old hosts not released: {e}"
            self.registry.save(target)

    async def _rolling(self, target: DeploymentTarget, record: RolloutRecord, revision: str,
                       deploy: DeployConfig, config: RolloutConfig, context: StageContext,
                       stage_name: str, deadline: float) -> None:
        hosts = list(target.hosts)
        total = len(hosts)
        batches = [hosts[i:i + deploy.batch_size] for i in range(0, total, deploy.batch_size)]
        replaced: List[Host] = []

        for n, batch in enumerate(batches):
            if n > 0:
                await self._pause(config.traffic_step_interval, deadline)
            self._transition(target, record, RolloutState.PROVISIONING, f"batch {n + 1}/{len(batches)}")

            for host in batch:
                installed = await self._install_host(target, host, revision, deploy, context, stage_name, deadline)
                target.hosts[target.hosts.index(host)] = installed
                replaced.append(installed)
            self.registry.save(target)

            percent = round(100 * len(replaced) / total)
            await self._shift(target, record, revision, percent, deadline)
            await self._verify(target, record, replaced, config, deadline)

        self._complete(target, record, list(target.hosts), revision)

    async def _roll_back(self, target: DeploymentTarget, record: Optional[RolloutRecord], reason: str) -> bool:
        """Restore the snapshot taken before provisioning. No-op when nothing is pending."""
        snapshot = target.pending
        if snapshot is None:
            logger.info(f"{target.name} has no pending rollout; rollback is a no-op")
            return False

        if target.rollout_state != RolloutState.ROLLING_BACK.value:
            self._transition(target, record, RolloutState.ROLLING_BACK, reason)

        previous = {host.host_id: host for host in snapshot.hosts}
        added = [host for host in target.hosts if host.host_id not in previous]
        changed = [
            previous[host.host_id] for host in target.hosts
            if host.host_id in previous and host.revision != previous[host.host_id].revision
        ]

        restore = async_retry(
            max_attempts=self.config.restore_attempts,
            delay=self.config.restore_backoff,
            exceptions=(Exception,),
            logger_name=__name__,
        )
        try:
            await restore(self.backend.set_weights)(target, snapshot.weights)
            for host in changed:
                if host.revision:
                    await restore(self.backend.install)(target, host, host.revision)
            if added:
                await restore(self.backend.release)(target, added)
        except Exception as e:
            # Snapshot stays pending so the next deploy or a manual rollback can finish the job
            error = f"rollback of {target.name} to {snapshot.revision} incomplete: {e}"
            if record is not None:
                record.error = f"{reason}; {error}"
            self.registry.save(target)
            logger.error(error)
            raise RollbackFailure(error) from e

        target.restore(snapshot)
        target.pending = None
        if record is not None:
            record.error = reason
        self._transition(target, record, RolloutState.ROLLED_BACK, f"restored {snapshot.revision}")
        logger.warning(f"{target.name} rolled back to {snapshot.revision}: {reason}")
        return True
