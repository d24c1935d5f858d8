"""
Health Probe

Reports per-component health from the container runtime and blocks until a
set of components is healthy, one of them turns unhealthy, or a deadline
passes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

import httpx

from common.exceptions import ComponentsUnhealthy, HealthTimeout, LifecycleError, UpdateError
from utils.polling import CancellationToken, PollTimeout, poll_until

logger = logging.getLogger(__name__)


class ComponentHealth(Enum):
    """Health of a single component."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    UNKNOWN = "unknown"


class HealthOutcome(Enum):
    """Result of waiting for a set of components."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


# Container runtime health strings -> component health.
# A running container without a healthcheck counts as healthy.
RUNTIME_HEALTH = {
    "healthy": ComponentHealth.HEALTHY,
    "no_healthcheck": ComponentHealth.HEALTHY,
    "starting": ComponentHealth.STARTING,
    "unhealthy": ComponentHealth.UNHEALTHY,
    "not_running": ComponentHealth.UNHEALTHY,
    "missing": ComponentHealth.UNKNOWN,
}


@dataclass
class HealthReport:
    """Outcome of ``await_healthy`` with the last observed statuses."""
    outcome: HealthOutcome
    statuses: Dict[str, ComponentHealth] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.outcome is HealthOutcome.HEALTHY

    def failing(self) -> Dict[str, str]:
        """Components that are not healthy, as plain strings."""
        return {
            name: status.value
            for name, status in self.statuses.items()
            if status is not ComponentHealth.HEALTHY
        }

    def describe(self) -> str:
        if self.healthy:
            return "all components healthy"
        failing = ", ".join(f"{k}={v}" for k, v in self.failing().items())
        return f"{self.outcome.value}: {failing or 'no status'}"

    def to_error(self, timeout: float) -> UpdateError:
        if self.outcome is HealthOutcome.UNHEALTHY:
            return ComponentsUnhealthy(self.failing(), self.elapsed)
        return HealthTimeout(self.failing(), timeout)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "statuses": {k: v.value for k, v in self.statuses.items()},
            "elapsed": round(self.elapsed, 1),
        }


class HttpHealthCheck:
    """
    HTTP check layered on top of container health.

    A 2xx response is healthy; anything else means the component is still
    starting, so the deadline decides.
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self.client = client

    def __call__(self) -> ComponentHealth:
        try:
            if self.client is not None:
                response = self.client.get(self.url, timeout=self.timeout)
            else:
                response = httpx.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health endpoint {self.url} not reachable: {e}")
            return ComponentHealth.STARTING
        if response.is_success:
            return ComponentHealth.HEALTHY
        logger.debug(f"Health endpoint {self.url} returned {response.status_code}")
        return ComponentHealth.STARTING


class HealthProbe:
    """
    Polls component health through the container runtime.

    Example:
        probe = HealthProbe(runtime)
        report = probe.await_healthy(["n8n", "postgres"], timeout=300, poll_interval=10)
        if not report.healthy:
            ...
    """

    def __init__(
        self,
        runtime,
        http_checks: Optional[Dict[str, Callable[[], ComponentHealth]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.runtime = runtime
        self.http_checks = http_checks or {}
        self.clock = clock
        self.sleep = sleep

    def component_health(self, component: str) -> ComponentHealth:
        try:
            raw = self.runtime.health(component)
        except LifecycleError as e:
            logger.warning(f"Could not read health of {component}: {e}")
            return ComponentHealth.UNKNOWN

        status = RUNTIME_HEALTH.get(raw, ComponentHealth.UNKNOWN)
        check = self.http_checks.get(component)
        if status is ComponentHealth.HEALTHY and check is not None:
            status = check()
        return status

    def statuses(self, components: Iterable[str]) -> Dict[str, ComponentHealth]:
        return {name: self.component_health(name) for name in components}

    def quick_check(self, components: Iterable[str]) -> bool:
        """Single non-blocking pass: True only if every component is healthy."""
        return all(s is ComponentHealth.HEALTHY for s in self.statuses(components).values())

    def await_healthy(
        self,
        components: Iterable[str],
        timeout: float,
        poll_interval: float,
        cancel: Optional[CancellationToken] = None,
    ) -> HealthReport:
        """
        Block until all components are healthy.

        Returns as soon as all are healthy, immediately when any is unhealthy,
        and with ``TIMED_OUT`` at the deadline.

        Raises:
            OperationCancelled: If ``cancel`` fires between polls
        """
        components = list(components)
        started = self.clock()
        last: Dict[str, ComponentHealth] = {}

        def probe() -> Optional[HealthReport]:
            current = self.statuses(components)
            last.clear()
            last.update(current)
            values = current.values()
            if any(s is ComponentHealth.UNHEALTHY for s in values):
                return HealthReport(HealthOutcome.UNHEALTHY, current, self.clock() - started)
            if all(s is ComponentHealth.HEALTHY for s in values):
                return HealthReport(HealthOutcome.HEALTHY, current, self.clock() - started)
            return None

        logger.info(f"Waiting up to {timeout:g}s for {', '.join(components)} to become healthy")
        try:
            report = poll_until(
                probe,
                timeout=timeout,
                interval=poll_interval,
                cancel=cancel,
                operation="health check",
                clock=self.clock,
                sleep=self.sleep,
            )
        except PollTimeout:
            report = HealthReport(HealthOutcome.TIMED_OUT, dict(last), self.clock() - started)

        if report.healthy:
            logger.info(f"Components healthy after {report.elapsed:.0f}s")
        else:
            logger.warning(f"Health check {report.describe()}")
        return report
