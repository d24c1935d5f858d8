"""
Docker Compose Runtime

Thin wrapper around the ``docker`` / ``docker compose`` CLI. Everything the
lifecycle layer needs from the container runtime goes through here, so tests
can swap in a fake with the same methods.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Dict, List, Optional, Sequence

from common.config import DeploymentConfig
from common.decorators import retry
from common.exceptions import CommandError, DependencyError

logger = logging.getLogger(__name__)

# docker compose ps health strings
HEALTH_HEALTHY = "healthy"
HEALTH_STARTING = "starting"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_NONE = "no_healthcheck"
HEALTH_NOT_RUNNING = "not_running"
HEALTH_MISSING = "missing"


def parse_ps_output(output: str) -> List[dict]:
    """
    Parse ``docker compose ps --format json``.

    Older compose releases print one JSON array, newer ones print one JSON
    object per line.
    """
    output = output.strip()
    if not output:
        return []
    if output.startswith("["):
        return json.loads(output)
    entries = []
    for line in output.splitlines():
        line = line.strip()
        if line:
            entries.append(json.loads(line))
    return entries


def container_health(entry: dict) -> str:
    """Map one ``ps`` entry to a health string."""
    state = (entry.get("State") or "").lower()
    health = (entry.get("Health") or "").lower()

    if state != "running":
        if state in ("created", "restarting"):
            return HEALTH_STARTING
        return HEALTH_NOT_RUNNING
    if health in (HEALTH_HEALTHY, HEALTH_STARTING, HEALTH_UNHEALTHY):
        return health
    return HEALTH_NONE


class ComposeRuntime:
    """
    Container runtime backed by docker compose.

    Example:
        runtime = ComposeRuntime(config)
        runtime.stop(["n8n", "postgres", "redis"], timeout=30)
        runtime.start(["n8n", "postgres", "redis"], recreate=True)
    """

    COMMAND_TIMEOUT = 300

    def __init__(self, config: DeploymentConfig):
        self.config = config
        self.project_dir = config.project_dir
        self.compose_file = config.compose_file

    def _compose_args(self) -> List[str]:
        return ["docker", "compose", "-f", str(self.compose_file)]

    def _run(
        self,
        cmd: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                timeout=timeout or self.COMMAND_TIMEOUT,
                cwd=str(self.project_dir),
            )
        except FileNotFoundError as e:
            raise DependencyError(cmd[0], hint="Install Docker with the compose plugin") from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(list(cmd), -1, f"timed out after {e.timeout}s") from e

        if check and result.returncode != 0:
            raise CommandError(list(cmd), result.returncode, result.stderr.strip())
        return result

    # --- lifecycle ---

    def stop(self, services: Sequence[str], timeout: int = 30) -> None:
        """Gracefully stop services, killing them after ``timeout`` seconds."""
        logger.info(f"Stopping services: {', '.join(services)}")
        self._run(
            self._compose_args() + ["stop", "--timeout", str(timeout), *services],
            timeout=timeout + 60,
        )

    def start(self, services: Sequence[str], recreate: bool = False) -> None:
        """Start services; ``recreate`` forces new containers from current images."""
        cmd = self._compose_args() + ["up", "-d"]
        if recreate:
            cmd.append("--force-recreate")
        cmd.extend(services)
        logger.info(f"Starting services: {', '.join(services)}{' (recreate)' if recreate else ''}")
        self._run(cmd)

    def exec_args(self, service: str, *args: str) -> List[str]:
        """Command line for a non-interactive ``exec`` inside a service."""
        return self._compose_args() + ["exec", "-T", service, *args]

    # --- images ---

    def image_for(self, service: str) -> str:
        image = self.config.images.get(service)
        if not image:
            raise CommandError(["image-lookup", service], 1, f"No image configured for {service}")
        return image

    def current_version(self, service: str) -> Optional[str]:
        """Local image id for the service's image, or None if not present."""
        result = self._run(
            ["docker", "image", "inspect", "--format", "{{.Id}}", self.image_for(service)],
            check=False,
            timeout=30,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    @retry(attempts=3, delay=5.0, retry_on=(CommandError,))
    def pull_latest(self, service: str) -> Optional[str]:
        """Pull the newest image for a service and return its id."""
        image = self.image_for(service)
        logger.info(f"Pulling {image}")
        self._run(["docker", "pull", image], timeout=self.COMMAND_TIMEOUT)
        return self.current_version(service)

    def restore_version(self, service: str, version: str) -> None:
        """Point the service's image tag back at a previous image id."""
        image = self.image_for(service)
        logger.info(f"Re-tagging {image} -> {version[:19]}")
        self._run(["docker", "tag", version, image], timeout=60)

    def versions(self) -> Dict[str, Optional[str]]:
        """Image ids for every configured service."""
        return {service: self.current_version(service) for service in self.config.services}

    # --- health ---

    def ps(self) -> List[dict]:
        result = self._run(self._compose_args() + ["ps", "--all", "--format", "json"], timeout=30)
        return parse_ps_output(result.stdout)

    def health(self, service: str) -> str:
        """Health string of a service's container (see ``HEALTH_*``)."""
        for entry in self.ps():
            if entry.get("Service") == service:
                return container_health(entry)
        return HEALTH_MISSING

    def is_available(self) -> bool:
        """Whether the docker CLI and daemon respond."""
        try:
            self._run(["docker", "info", "--format", "{{.ServerVersion}}"], timeout=15)
            return True
        except (DependencyError, CommandError):
            return False

