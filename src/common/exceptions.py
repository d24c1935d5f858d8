"""
r8-lifecycle Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, operator feedback, and programmatic error handling.
"""

from typing import Optional, Dict, Any


class LifecycleError(Exception):
    """
    Base exception for all lifecycle errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Capture errors
# =============================================================================

class CaptureError(LifecycleError):
    """Base for snapshot capture errors."""
    pass


class ServiceUnavailable(CaptureError):
    """A data source could not be reached."""
    def __init__(self, source: str, reason: str):
        super().__init__(
            f"Data source '{source}' is unavailable: {reason}",
            code="SERVICE_UNAVAILABLE",
            details={"source": source, "reason": reason},
        )


class DumpFailed(CaptureError):
    """Logical dump of the relational store failed."""
    def __init__(self, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Database dump failed: {reason}",
            code="DUMP_FAILED",
            details={"reason": reason},
            cause=cause,
        )


class SnapshotTimeout(CaptureError):
    """KV store did not finish its background save in time."""
    def __init__(self, source: str, timeout: float):
        super().__init__(
            f"Snapshot of '{source}' did not complete within {timeout:g}s",
            code="SNAPSHOT_TIMEOUT",
            details={"source": source, "timeout": timeout},
        )


class DiskFull(CaptureError):
    """Not enough free space for a new bundle."""
    def __init__(self, path: str, free_bytes: int, required_bytes: int):
        super().__init__(
            f"Insufficient disk space at {path}: "
            f"{free_bytes // (1024 * 1024)} MB free, "
            f"{required_bytes // (1024 * 1024)} MB required",
            code="DISK_FULL",
            details={
                "path": path,
                "free_bytes": free_bytes,
                "required_bytes": required_bytes,
            },
            recoverable=False,
        )


# =============================================================================
# Bundle / restore errors
# =============================================================================

class BundleError(LifecycleError):
    """Base for bundle catalog and restore errors."""
    pass


class BundleNotFound(BundleError):
    """Bundle does not exist in the catalog."""
    def __init__(self, bundle_id: str):
        super().__init__(
            f"Bundle '{bundle_id}' not found",
            code="BUNDLE_NOT_FOUND",
            details={"bundle_id": bundle_id},
            recoverable=False,
        )


class InvalidBundle(BundleError):
    """Bundle failed validation and must not be restored."""
    def __init__(self, bundle_id: str, issues: Optional[list] = None):
        issues = list(issues or [])
        super().__init__(
            f"Bundle '{bundle_id}' is invalid",
            code="INVALID_BUNDLE",
            details={"bundle_id": bundle_id, "issues": issues},
            recoverable=False,
        )
        self.issues = issues


class ConfirmationRequired(BundleError):
    """Destructive restore was not confirmed."""
    def __init__(self, bundle_id: str):
        super().__init__(
            f"Restore of '{bundle_id}' was not confirmed; pass force to skip the prompt",
            code="CONFIRMATION_REQUIRED",
            details={"bundle_id": bundle_id},
        )


class RestoreFailed(BundleError):
    """One restore step failed."""
    def __init__(
        self,
        step: str,
        reason: str,
        cause: Optional[Exception] = None,
        sidecars: Optional[list] = None,
    ):
        super().__init__(
            f"Restore step '{step}' failed: {reason}",
            code="RESTORE_FAILED",
            details={"step": step, "reason": reason},
            cause=cause,
        )
        self.step = step
        self.sidecars = list(sidecars or [])


# =============================================================================
# Update errors
# =============================================================================

class UpdateError(LifecycleError):
    """Base for update run errors."""
    pass


class LockContention(UpdateError):
    """Another destructive operation holds the execution lock."""
    def __init__(self, owner_pid: Optional[int], lock_path: str):
        super().__init__(
            f"Another lifecycle operation is already running (PID: {owner_pid})",
            code="LOCK_CONTENTION",
            details={"owner_pid": owner_pid, "lock_path": lock_path},
        )
        self.owner_pid = owner_pid


class HealthTimeout(UpdateError):
    """Components did not become healthy."""
    def __init__(self, components: Dict[str, str], timeout: float):
        super().__init__(
            f"Components not healthy after {timeout:g}s",
            code="HEALTH_TIMEOUT",
            details={"components": components, "timeout": timeout},
        )


class ComponentsUnhealthy(UpdateError):
    """A component reported unhealthy before the deadline."""
    def __init__(self, components: Dict[str, str], elapsed: float):
        failing = ", ".join(f"{k}={v}" for k, v in components.items())
        super().__init__(
            f"Components unhealthy after {elapsed:.0f}s: {failing or 'no status'}",
            code="COMPONENTS_UNHEALTHY",
            details={"components": components, "elapsed": elapsed},
        )


class RollbackFailed(UpdateError):
    """Rollback restore failed; manual intervention required."""
    def __init__(self, bundle_id: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Rollback to '{bundle_id}' failed: {reason}. Manual intervention required",
            code="ROLLBACK_FAILED",
            details={"bundle_id": bundle_id, "reason": reason},
            cause=cause,
            recoverable=False,
        )


class StateTransitionError(UpdateError):
    """Illegal update run phase transition."""
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"current": current, "target": target},
            recoverable=False,
        )


class OperationCancelled(LifecycleError):
    """Operator aborted the operation."""
    def __init__(self, operation: str = "operation"):
        super().__init__(
            f"{operation} cancelled",
            code="CANCELLED",
            details={"operation": operation},
        )


class NotificationFailed(LifecycleError):
    """A notification channel failed. Never fatal."""
    def __init__(self, channel: str, reason: str):
        super().__init__(
            f"Notification via {channel} failed: {reason}",
            code="NOTIFICATION_FAILED",
            details={"channel": channel, "reason": reason},
        )


# =============================================================================
# Runtime errors
# =============================================================================

class CommandError(LifecycleError):
    """External command returned a failure."""
    def __init__(self, command: list, returncode: Optional[int], stderr: str = ""):
        super().__init__(
            f"Command failed (rc={returncode}): {' '.join(command)}",
            code="COMMAND_FAILED",
            details={"command": command, "returncode": returncode, "stderr": stderr[:500]},
        )
        self.returncode = returncode
        self.stderr = stderr


class DependencyError(LifecycleError):
    """Missing dependency."""
    def __init__(self, dependency: str, hint: Optional[str] = None):
        super().__init__(
            f"Missing dependency: {dependency}",
            code="MISSING_DEPENDENCY",
            details={"dependency": dependency, "hint": hint},
            recoverable=False,
        )


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(LifecycleError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )

