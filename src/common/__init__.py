"""
r8-lifecycle Common Utilities

Shared configuration, errors, logging and cleanup helpers.
"""

from .exceptions import (
    LifecycleError, CaptureError, ServiceUnavailable, DumpFailed,
    SnapshotTimeout, DiskFull, BundleError, BundleNotFound, InvalidBundle,
    ConfirmationRequired, RestoreFailed, UpdateError, LockContention,
    HealthTimeout, ComponentsUnhealthy, RollbackFailed, StateTransitionError,
    OperationCancelled,
    NotificationFailed, CommandError, DependencyError, ConfigError,
    InvalidConfigError,
)
from .decorators import retry, timed
from .logging_config import setup_logging, LogContext
from .resources import (
    CleanupRegistry, register_cleanup, unregister_cleanup, cleanup_all,
    install_termination_handlers,
)
from .config import DeploymentConfig, NotificationConfig, load_config

__all__ = [
    # Exceptions
    "LifecycleError", "CaptureError", "ServiceUnavailable", "DumpFailed",
    "SnapshotTimeout", "DiskFull", "BundleError", "BundleNotFound", "InvalidBundle",
    "ConfirmationRequired", "RestoreFailed", "UpdateError", "LockContention",
    "HealthTimeout", "ComponentsUnhealthy", "RollbackFailed", "StateTransitionError",
    "OperationCancelled",
    "NotificationFailed", "CommandError", "DependencyError", "ConfigError",
    "InvalidConfigError",
    # Decorators
    "retry", "timed",
    # Logging
    "setup_logging", "LogContext",
    # Cleanup
    "CleanupRegistry", "register_cleanup", "unregister_cleanup", "cleanup_all",
    "install_termination_handlers",
    # Config
    "DeploymentConfig", "NotificationConfig", "load_config",
]
