"""
Health checking for deployment targets.

A checker answers one question per poll: is every host in rotation serving?
``wait_until_healthy`` turns single polls into the verification gate used by
the rollout controller (N consecutive healthy polls, bounded by a timeout).
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import requests

from .errors import HealthCheckFailed, HealthCheckTimeout
from .models import DeploymentTarget, Host, utc_now

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    healthy: bool
    details: Dict[str, str] = field(default_factory=dict)
    checked_at: str = field(default_factory=utc_now)


class HealthChecker:
    """Base class for health checkers (to be extended by specific probes)"""

    async def check(self, target: DeploymentTarget, hosts: Optional[List[Host]] = None) -> HealthStatus:
        raise NotImplementedError

    async def wait_until_healthy(
        self,
        target: DeploymentTarget,
        threshold: int,
        interval: float,
        timeout: float,
        hosts: Optional[List[Host]] = None,
    ) -> HealthStatus:
        """Poll until ``threshold`` consecutive healthy results.

        Raises:
            HealthCheckFailed: a poll reported unhealthy before the threshold was met
            HealthCheckTimeout: the threshold was not met within ``timeout`` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        consecutive = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise HealthCheckTimeout(
                    f"{target.name}: {consecutive}/{threshold} healthy polls before {timeout:.1f}s timeout"
                )

            try:
                status = await asyncio.wait_for(self.check(target, hosts), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise HealthCheckTimeout(
                    f"{target.name}: health poll did not answer before {timeout:.1f}s timeout"
                ) from e

            if not status.healthy:
                logger.warning(f"{target.name}: unhealthy poll after {consecutive} healthy: {status.details}")
                raise HealthCheckFailed(f"{target.name} reported unhealthy: {status.details}")

            consecutive += 1
            logger.info(f"{target.name}: healthy poll {consecutive}/{threshold}")
            if consecutive >= threshold:
                return status

            await asyncio.sleep(max(0.0, min(interval, deadline - loop.time())))


class HttpHealthChecker(HealthChecker):
    """Probes each host's health URL; healthy when every host answers 2xx."""

    def __init__(self, request_timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.request_timeout = request_timeout
        self.session = session or requests.Session()

    def _probe(self, host: Host) -> str:
        if not host.health_url:
            return "ok (no health check configured)"

        try:
            response = self.session.get(host.health_url, timeout=self.request_timeout)
        except requests.RequestException as e:
            return f"error: {e}"

        if 200 <= response.status_code < 300:
            return "ok"
        return f"status {response.status_code}"

    async def check(self, target: DeploymentTarget, hosts: Optional[List[Host]] = None) -> HealthStatus:
        hosts = target.hosts if hosts is None else hosts
        results = await asyncio.gather(*(asyncio.to_thread(self._probe, host) for host in hosts))
        details = {host.host_id: result for host, result in zip(hosts, results)}
        healthy = all(result.startswith("ok") for result in results)
        return HealthStatus(healthy=healthy, details=details)


class StaticHealthChecker(HealthChecker):
    """Replays a scripted sequence of poll results, then ``default``.

    Used for local dry runs and tests.
    """

    def __init__(self, results: Iterable[bool] = (), default: bool = True, delay: float = 0.0):
        self.results = deque(results)
        self.default = default
        self.delay = delay
        self.calls = 0

    async def check(self, target: DeploymentTarget, hosts: Optional[List[Host]] = None) -> HealthStatus:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        healthy = self.results.popleft() if self.results else self.default
        hosts = target.hosts if hosts is None else hosts
        state = "ok" if healthy else "unhealthy"
        return HealthStatus(healthy=healthy, details={host.host_id: state for host in hosts})
