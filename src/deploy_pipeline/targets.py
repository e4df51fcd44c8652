"""
Deployment targets and the backends that act on them.

``TargetRegistry`` owns the target records and one lock per target. The
rollout controller must hold a target's lock for as long as it mutates the
target, so two rollouts can never race on the same revision pointer while
rollouts on different targets proceed independently.

``DeploymentBackend`` is the narrow interface to whatever actually runs the
hosts (a cloud control plane, an agent fleet). ``LocalBackend`` records the
calls it receives and is used for local runs and tests.
"""
import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

from .errors import DefinitionError
from .models import DeploymentTarget, Host
from .run_store import RunStore

logger = logging.getLogger(__name__)


class TargetRegistry:
    """Owns deployment target records and their per-target locks."""

    def __init__(self, targets: Optional[Dict[str, DeploymentTarget]] = None,
                 store: Optional[RunStore] = None):
        self.store = store
        self._targets: Dict[str, DeploymentTarget] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        if store is not None:
            self._targets.update(store.load_targets())
        for target in (targets or {}).values():
            self.register(target)

    def register(self, target: DeploymentTarget, replace: bool = False) -> DeploymentTarget:
        """Add a target. A persisted target with the same name wins unless ``replace``."""
        if target.name in self._targets and not replace:
            logger.debug(f"Target {target.name} already registered; keeping persisted state")
            return self._targets[target.name]

        self._targets[target.name] = target
        self.save(target)
        return target

    def get(self, name: str) -> DeploymentTarget:
        if name not in self._targets:
            raise DefinitionError(f"Unknown deployment target: {name}")
        return self._targets[name]

    def names(self) -> List[str]:
        return sorted(self._targets)

    def lock_for(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    @asynccontextmanager
    async def locked(self, name: str):
        """Hold the target's lock and yield the target record."""
        target = self.get(name)
        lock = self.lock_for(name)
        if lock.locked():
            logger.info(f"Waiting for in-progress rollout on {name}")
        async with lock:
            yield target

    def save(self, target: DeploymentTarget) -> None:
        if self.store is not None:
            self.store.save_target(target)


class DeploymentBackend:
    """Base class for deployment backends (to be extended by specific providers)"""

    async def provision(self, target: DeploymentTarget, template: List[Host], revision: str) -> List[Host]:
        """Stand up new, empty hosts shaped like ``template`` (blue/green)."""
        raise NotImplementedError

    async def install(self, target: DeploymentTarget, host: Host, revision: str) -> Host:
        """Put ``revision`` on ``host`` and return the updated host."""
        raise NotImplementedError

    async def set_weights(self, target: DeploymentTarget, weights: Dict[str, int]) -> None:
        """Route traffic by revision, weights summing to 100."""
        raise NotImplementedError

    async def release(self, target: DeploymentTarget, hosts: List[Host]) -> None:
        """Decommission hosts no longer in rotation."""
        raise NotImplementedError


class LocalBackend(DeploymentBackend):
    """In-process backend that records every call."""

    def __init__(self):
        self.calls: List[Tuple[str, str, object]] = []
        self.weights: Dict[str, Dict[str, int]] = {}
        self.released: Dict[str, List[str]] = {}

    async def provision(self, target: DeploymentTarget, template: List[Host], revision: str) -> List[Host]:
        short = revision[:8]
        hosts = []
        for host in template:
            new_host = copy.deepcopy(host)
            new_host.host_id = f"{host.host_id}-{short}"
            new_host.revision = None
            hosts.append(new_host)
        self.calls.append(("provision", target.name, [h.host_id for h in hosts]))
        logger.info(f"Provisioned {len(hosts)} hosts on {target.name} for {short}")
        return hosts

    async def install(self, target: DeploymentTarget, host: Host, revision: str) -> Host:
        host.revision = revision
        self.calls.append(("install", target.name, (host.host_id, revision)))
        return host

    async def set_weights(self, target: DeploymentTarget, weights: Dict[str, int]) -> None:
        self.weights[target.name] = dict(weights)
        self.calls.append(("set_weights", target.name, dict(weights)))
        logger.info(f"Traffic on {target.name}: {weights}")

    async def release(self, target: DeploymentTarget, hosts: List[Host]) -> None:
        self.released.setdefault(target.name, []).extend(h.host_id for h in hosts)
        self.calls.append(("release", target.name, [h.host_id for h in hosts]))
