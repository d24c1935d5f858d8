"""
Deployment Configuration

One explicit configuration object, built from the project ``.env`` file and
the process environment, handed to every component constructor.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

from .exceptions import InvalidConfigError

DEFAULT_SERVICES = ["n8n", "postgres", "redis"]

DEFAULT_IMAGES: Dict[str, str] = {
    "n8n": "n8nio/n8n:latest",
    "postgres": "postgres:15-alpine",
    "redis": "redis:7-alpine",
}

DEFAULT_CONFIG_FILES = [
    ".env",
    "docker-compose.yml",
    "docker-compose.nginx.yml",
    "docker-compose.traefik.yml",
    "nginx",
    "traefik",
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class NotificationConfig:
    """Outbound notification channels."""
    enabled: bool = True
    slack_webhook_url: str = ""
    email_to: str = ""
    smtp_server: str = ""
    smtp_port: int = 25
    smtp_user: str = ""
    smtp_password: str = ""
    email_from: str = "r8-lifecycle@localhost"


@dataclass
class DeploymentConfig:
    """Complete configuration for one docker-compose deployment."""
    project_dir: Path
    compose_file: Path
    backup_dir: Path
    state_dir: Path

    # Data sources
    n8n_data_dir: Path
    redis_data_dir: Path
    config_files: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG_FILES))

    # Services
    services: List[str] = field(default_factory=lambda: list(DEFAULT_SERVICES))
    images: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_IMAGES))
    postgres_service: str = "postgres"
    postgres_user: str = "n8n"
    postgres_db: str = "n8n"
    redis_service: str = "redis"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    n8n_health_url: str = ""

    # Timing (seconds)
    health_timeout: float = 300.0
    health_poll_interval: float = 10.0
    stop_timeout: int = 30
    snapshot_timeout: float = 120.0

    # Policy
    min_free_bytes: int = 500 * 1024 * 1024
    retention_days: int = 30
    pre_update_retention_days: int = 7
    autoupdate_enabled: bool = True
    rollback_on_failure: bool = True

    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "lifecycle.lock"

    @property
    def run_state_file(self) -> Path:
        return self.state_dir / "last_run.json"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "lifecycle.log"

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if not self.services:
            errors.append("At least one service must be configured")
        if self.health_timeout <= 0:
            errors.append("Health timeout must be positive")
        if self.health_poll_interval <= 0:
            errors.append("Health poll interval must be positive")
        if self.health_poll_interval > self.health_timeout:
            errors.append("Health poll interval must not exceed the health timeout")
        if self.snapshot_timeout <= 0:
            errors.append("Snapshot timeout must be positive")
        if self.retention_days < 0 or self.pre_update_retention_days < 0:
            errors.append("Retention days must not be negative")
        if self.postgres_service not in self.services:
            errors.append(f"Postgres service '{self.postgres_service}' is not a configured service")
        if self.redis_service not in self.services:
            errors.append(f"Redis service '{self.redis_service}' is not a configured service")
        return errors

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly dict with secrets masked."""
        data = asdict(self)
        for key, value in list(data.items()):
            if isinstance(value, Path):
                data[key] = str(value)
        data["redis_password"] = "***" if self.redis_password else ""
        data["notifications"]["smtp_password"] = (
            "***" if self.notifications.smtp_password else ""
        )
        return data


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidConfigError(name, value, "expected true/false")


def _parse_number(name: str, value: Optional[str], default, kind=float):
    if value is None or value.strip() == "":
        return default
    try:
        return kind(value)
    except ValueError:
        raise InvalidConfigError(name, value, f"expected {kind.__name__}")


def _parse_list(value: Optional[str], default: List[str]) -> List[str]:
    if value is None or value.strip() == "":
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _resolve(project_dir: Path, value: Optional[str], default: Path) -> Path:
    if not value:
        return default
    path = Path(value)
    return path if path.is_absolute() else project_dir / path


def load_config(
    project_dir: Path,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DeploymentConfig:
    """
    Build the deployment configuration.

    Values from the project ``.env`` are overlaid by the process environment.

    Args:
        project_dir: Root of the docker-compose project.
        env_file: Alternative env file (default: ``<project_dir>/.env``).
        environ: Environment mapping (default: ``os.environ``).

    Raises:
        InvalidConfigError: If a value cannot be parsed or validation fails.
    """
    project_dir = Path(project_dir).resolve()
    env_file = env_file or project_dir / ".env"

    values: Dict[str, Optional[str]] = {}
    if env_file.exists():
        values.update(dotenv_values(env_file))
    values.update(environ if environ is not None else os.environ)

    def get(key: str) -> Optional[str]:
        return values.get(key)

    services = _parse_list(get("LIFECYCLE_SERVICES"), DEFAULT_SERVICES)
    images = dict(DEFAULT_IMAGES)
    for service in services:
        override = get(f"{service.upper().replace('-', '_')}_IMAGE")
        if override:
            images[service] = override

    notifications = NotificationConfig(
        enabled=_parse_bool("NOTIFICATION_ENABLED", get("NOTIFICATION_ENABLED"), True),
        slack_webhook_url=get("SLACK_WEBHOOK_URL") or "",
        email_to=get("NOTIFICATION_EMAIL") or "",
        smtp_server=get("SMTP_SERVER") or "",
        smtp_port=_parse_number("SMTP_PORT", get("SMTP_PORT"), 25, int),
        smtp_user=get("SMTP_USER") or "",
        smtp_password=get("SMTP_PASSWORD") or "",
        email_from=get("NOTIFICATION_FROM") or "r8-lifecycle@localhost",
    )

    min_free_mb = _parse_number("MIN_FREE_SPACE_MB", get("MIN_FREE_SPACE_MB"), 500, int)

    config = DeploymentConfig(
        project_dir=project_dir,
        compose_file=_resolve(project_dir, get("COMPOSE_FILE"), project_dir / "docker-compose.yml"),
        backup_dir=_resolve(project_dir, get("BACKUP_DIR"), project_dir / "backups"),
        state_dir=_resolve(project_dir, get("LIFECYCLE_STATE_DIR"), project_dir / ".lifecycle"),
        n8n_data_dir=_resolve(project_dir, get("N8N_DATA_DIR"), project_dir / "data" / "n8n"),
        redis_data_dir=_resolve(project_dir, get("REDIS_DATA_DIR"), project_dir / "data" / "redis"),
        config_files=_parse_list(get("LIFECYCLE_CONFIG_FILES"), DEFAULT_CONFIG_FILES),
        services=services,
        images=images,
        postgres_service=get("POSTGRES_SERVICE") or "postgres",
        postgres_user=get("POSTGRES_USER") or "n8n",
        postgres_db=get("POSTGRES_DB") or "n8n",
        redis_service=get("REDIS_SERVICE") or "redis",
        redis_host=get("REDIS_HOST") or "localhost",
        redis_port=_parse_number("REDIS_PORT", get("REDIS_PORT"), 6379, int),
        redis_password=get("REDIS_PASSWORD") or "",
        n8n_health_url=get("N8N_HEALTH_URL") or "",
        health_timeout=_parse_number("HEALTH_CHECK_TIMEOUT", get("HEALTH_CHECK_TIMEOUT"), 300.0),
        health_poll_interval=_parse_number("HEALTH_POLL_INTERVAL", get("HEALTH_POLL_INTERVAL"), 10.0),
        stop_timeout=_parse_number("STOP_TIMEOUT", get("STOP_TIMEOUT"), 30, int),
        snapshot_timeout=_parse_number("SNAPSHOT_TIMEOUT", get("SNAPSHOT_TIMEOUT"), 120.0),
        min_free_bytes=min_free_mb * 1024 * 1024,
        retention_days=_parse_number("BACKUP_RETENTION_DAYS", get("BACKUP_RETENTION_DAYS"), 30, int),
        pre_update_retention_days=_parse_number(
            "MAX_BACKUP_RETENTION", get("MAX_BACKUP_RETENTION"), 7, int
        ),
        autoupdate_enabled=_parse_bool("AUTOUPDATE_ENABLED", get("AUTOUPDATE_ENABLED"), True),
        rollback_on_failure=_parse_bool("ROLLBACK_ON_FAILURE", get("ROLLBACK_ON_FAILURE"), True),
        notifications=notifications,
    )

    errors = config.validate()
    if errors:
        raise InvalidConfigError("config", str(env_file), "; ".join(errors))
    return config
