"""
r8-lifecycle Update System

Unattended component updates with a pre-update backup and automatic
rollback:
- Single-flight execution lock
- Bounded health verification
- Best-effort notifications (log, Slack, email)
- Update state machine with rollback on failure
"""

from .lock import ExecutionLock, LockHandle, LockOwner
from .health import (
    ComponentHealth,
    HealthOutcome,
    HealthProbe,
    HealthReport,
    HttpHealthCheck,
)
from .notify import (
    Notification,
    NotificationSink,
    Severity,
    LogChannel,
    SlackWebhookChannel,
    EmailChannel,
)
from .orchestrator import (
    RunPhase,
    UpdateOrchestrator,
    UpdateRun,
    VersionChange,
)

__all__ = [
    "ExecutionLock",
    "LockHandle",
    "LockOwner",
    "ComponentHealth",
    "HealthOutcome",
    "HealthProbe",
    "HealthReport",
    "HttpHealthCheck",
    "Notification",
    "NotificationSink",
    "Severity",
    "LogChannel",
    "SlackWebhookChannel",
    "EmailChannel",
    "RunPhase",
    "UpdateOrchestrator",
    "UpdateRun",
    "VersionChange",
]
