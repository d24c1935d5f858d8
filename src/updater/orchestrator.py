"""
Update Orchestrator

Drives one unattended update of the compose stack:

    idle -> checking -> no_update
                     -> backing_up -> applying -> verifying -> committed
                                                            -> rolling_back -> rolled_back
                                                                            -> failed

A complete pre-update bundle is always captured before any component is
replaced. When the new components do not become healthy, the previous images
are re-tagged and the pre-update bundle is restored.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from common.config import DeploymentConfig
from common.exceptions import (
    CaptureError, ConfigError, LifecycleError, LockContention,
    OperationCancelled, RollbackFailed, StateTransitionError,
)
from common.logging_config import LogContext
from utils.atomic_write import atomic_write_json
from utils.polling import CancellationToken

from .notify import Notification, NotificationSink, Severity

logger = logging.getLogger(__name__)

PRE_UPDATE_NAME = "pre-update"


class RunPhase(Enum):
    """Phase of an update run."""
    IDLE = "idle"
    CHECKING = "checking"
    NO_UPDATE = "no_update"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_PHASES = {
    RunPhase.NO_UPDATE,
    RunPhase.COMMITTED,
    RunPhase.ROLLED_BACK,
    RunPhase.FAILED,
}

# Format: {current_phase: {allowed next phases}}
VALID_TRANSITIONS: Dict[RunPhase, Set[RunPhase]] = {
    RunPhase.IDLE: {RunPhase.CHECKING, RunPhase.FAILED},
    RunPhase.CHECKING: {RunPhase.NO_UPDATE, RunPhase.BACKING_UP, RunPhase.FAILED},
    RunPhase.BACKING_UP: {RunPhase.APPLYING, RunPhase.FAILED},
    RunPhase.APPLYING: {RunPhase.VERIFYING, RunPhase.ROLLING_BACK, RunPhase.FAILED},
    RunPhase.VERIFYING: {RunPhase.COMMITTED, RunPhase.ROLLING_BACK, RunPhase.FAILED},
    RunPhase.ROLLING_BACK: {RunPhase.ROLLED_BACK, RunPhase.FAILED},
}


@dataclass
class VersionChange:
    """Image id of one service before and after pulling."""
    service: str
    old: Optional[str]
    new: Optional[str]

    @property
    def changed(self) -> bool:
        return self.old != self.new

    def describe(self) -> str:
        return f"{self.service}: {_short(self.old)} -> {_short(self.new)}"

    def to_dict(self) -> dict:
        return {"service": self.service, "old": self.old, "new": self.new}


def _short(image_id: Optional[str]) -> str:
    if not image_id:
        return "none"
    return image_id.split(":", 1)[-1][:12]


@dataclass
class UpdateRun:
    """One execution of the update state machine."""
    id: str
    started_at: datetime
    phase: RunPhase = RunPhase.IDLE
    finished_at: Optional[datetime] = None
    bundle_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    history: List[dict] = field(default_factory=list)
    changes: List[VersionChange] = field(default_factory=list)

    @classmethod
    def new(cls) -> "UpdateRun":
        now = datetime.now()
        return cls(id=f"run-{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}", started_at=now)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def succeeded(self) -> bool:
        return self.phase in (RunPhase.COMMITTED, RunPhase.NO_UPDATE)

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def summary(self) -> str:
        """Human-readable report of the run."""
        lines = [
            f"Update run {self.id}: {self.phase.value}",
            f"  Started: {self.started_at:%Y-%m-%d %H:%M:%S} ({self.duration:.0f}s)",
        ]
        if self.changes:
            lines.append("  Changes:")
            lines.extend(f"    {c.describe()}" for c in self.changes)
        if self.bundle_id:
            lines.append(f"  Pre-update bundle: {self.bundle_id}")
        if self.error:
            lines.append(f"  Error: {self.error}")
        if len(self.history) > 1:
            lines.append("  Phases: " + " -> ".join(h["phase"] for h in self.history))
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "phase": self.phase.value,
            "bundle_id": self.bundle_id,
            "error": self.error,
            "error_code": self.error_code,
            "history": self.history,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UpdateRun":
        finished = data.get("finished_at")
        return cls(
            id=data["id"],
            started_at=datetime.fromisoformat(data["started_at"]),
            phase=RunPhase(data["phase"]),
            finished_at=datetime.fromisoformat(finished) if finished else None,
            bundle_id=data.get("bundle_id"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            history=list(data.get("history", [])),
            changes=[VersionChange(**c) for c in data.get("changes", [])],
        )


ProgressCallback = Callable[[RunPhase, str], None]


class UpdateOrchestrator:
    """
    Sequences check -> backup -> apply -> verify -> commit or rollback.

    Example:
        orchestrator = UpdateOrchestrator(config, runtime, capture, catalog,
                                          executor, probe, sink, lock)
        run = orchestrator.run()
        print(run.summary())
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runtime,
        capture,
        catalog,
        restore,
        probe,
        sink: NotificationSink,
        lock,
    ):
        self.config = config
        self.runtime = runtime
        self.capture = capture
        self.catalog = catalog
        self.restore = restore
        self.probe = probe
        self.sink = sink
        self.lock = lock
        self._progress_callback: Optional[ProgressCallback] = None

    def set_progress_callback(self, callback: ProgressCallback) -> None:
        """
        Set callback for phase changes.

        Args:
            callback: Function(phase, message)
        """
        self._progress_callback = callback

    def _progress(self, phase: RunPhase, message: str) -> None:
        if self._progress_callback:
            try:
                self._progress_callback(phase, message)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")

    # --- state ---

    def _transition(self, run: UpdateRun, target: RunPhase, message: str = "", persist: bool = True) -> None:
        if target not in VALID_TRANSITIONS.get(run.phase, set()):
            raise StateTransitionError(run.phase.value, target.value)

        logger.info(f"Run {run.id}: {run.phase.value} -> {target.value}{f' ({message})' if message else ''}")
        run.phase = target
        run.history.append({"phase": target.value, "at": datetime.now().isoformat(), "message": message})
        if target in TERMINAL_PHASES:
            run.finished_at = datetime.now()
        if persist:
            self._save(run)
        self._progress(target, message)

    def _save(self, run: UpdateRun) -> None:
        try:
            atomic_write_json(self.config.run_state_file, run.to_dict())
        except OSError as e:
            logger.warning(f"Could not persist run state: {e}")

    def last_run(self) -> Optional[UpdateRun]:
        """Run recorded by the most recent invocation, if any."""
        try:
            data = json.loads(self.config.run_state_file.read_text(encoding="utf-8"))
            return UpdateRun.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Run state file is unreadable: {e}")
            return None

    # --- check ---

    def _detect(self) -> List[VersionChange]:
        changes = []
        for service in self.config.services:
            old = self.runtime.current_version(service)
            new = self.runtime.pull_latest(service)
            changes.append(VersionChange(service, old, new))
            logger.debug(f"Version of {service}: {_short(old)} -> {_short(new)}")
        return changes

    def check(self) -> List[VersionChange]:
        """
        Pull the latest images and compare them with the local ones.

        Returns:
            Services whose image changed (empty: no update available)
        """
        return [c for c in self._detect() if c.changed]

    # --- run ---

    def run(
        self,
        force: bool = False,
        rollback_on_failure: Optional[bool] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> UpdateRun:
        """
        Execute one update run.

        Args:
            force: Apply even if no newer image was pulled or auto-update is disabled
            rollback_on_failure: Override the configured rollback policy
            cancel: Optional cancellation token, checked between polls

        Returns:
            The run in a terminal phase
        """
        cancel = cancel or CancellationToken()
        rollback = self.config.rollback_on_failure if rollback_on_failure is None else rollback_on_failure
        run = UpdateRun.new()

        try:
            handle = self.lock.acquire()
        except LockContention as e:
            # The active run owns the state file, leave it alone
            run.error = str(e)
            run.error_code = e.code
            self._transition(run, RunPhase.FAILED, "another run is active", persist=False)
            logger.error(f"Update not started: {e}")
            self._announce(run)
            return run

        with handle, LogContext(run_id=run.id):
            try:
                self._drive(run, force, rollback, cancel)
            except LifecycleError as e:
                self._fail(run, e)
            except Exception as e:
                logger.exception(f"Unexpected error during run {run.id}")
                self._fail(run, e)
            except (KeyboardInterrupt, SystemExit) as e:
                # Record the abort before the lock goes, then let it unwind
                logger.error(f"Run {run.id} interrupted ({type(e).__name__}) in {run.phase.value}")
                self._fail(run, OperationCancelled(f"update ({type(e).__name__})"))
                raise

        return run

    def _drive(self, run: UpdateRun, force: bool, rollback: bool, cancel: CancellationToken) -> None:
        services = self.config.services

        self._transition(run, RunPhase.CHECKING)
        if not self.config.autoupdate_enabled and not force:
            raise ConfigError(
                "Automatic updates are disabled (AUTOUPDATE_ENABLED=false)",
                code="AUTOUPDATE_DISABLED",
                recoverable=False,
            )

        run.changes = self.check()
        if not run.changes and not force:
            self._transition(run, RunPhase.NO_UPDATE, "all images are current")
            self._announce(run)
            return

        cancel.raise_if_cancelled("update")
        self._transition(run, RunPhase.BACKING_UP, f"{len(run.changes)} images changed")
        bundle = self.capture.capture(PRE_UPDATE_NAME, cancel=cancel)
        run.bundle_id = bundle.id
        if not bundle.is_complete:
            raise CaptureError(
                f"Pre-update bundle {bundle.id} is partial, refusing to update",
                code="PARTIAL_BUNDLE",
                details=bundle.failures,
                recoverable=False,
            )
        self.catalog.mark_last_pre_update(bundle.id)
        self._save(run)

        cancel.raise_if_cancelled("update")
        self._transition(run, RunPhase.APPLYING)
        try:
            self.runtime.stop(services, timeout=self.config.stop_timeout)
            self.runtime.start(services, recreate=True)
        except LifecycleError as e:
            logger.error(f"Applying the update failed: {e}")
            self._recover(run, rollback, cancel, e)
            return

        self._transition(run, RunPhase.VERIFYING)
        report = self.probe.await_healthy(
            services,
            timeout=self.config.health_timeout,
            poll_interval=self.config.health_poll_interval,
            cancel=cancel,
        )
        if not report.healthy:
            self._recover(run, rollback, cancel, report.to_error(self.config.health_timeout))
            return

        self._transition(run, RunPhase.COMMITTED, "all components healthy")
        self._prune_pre_update()
        self._announce(run)

    def _recover(
        self,
        run: UpdateRun,
        rollback: bool,
        cancel: CancellationToken,
        error: LifecycleError,
    ) -> None:
        run.error = str(error)
        run.error_code = error.code

        if not rollback:
            logger.error("Rollback is disabled, leaving the stack as it is")
            self._transition(run, RunPhase.FAILED, "rollback disabled")
            self._announce(run)
            return

        self._transition(run, RunPhase.ROLLING_BACK, error.message)
        self.sink.notify(Notification(
            "Update failed, rolling back",
            f"{error.message}\nRestoring pre-update bundle {run.bundle_id}.",
            Severity.WARNING,
        ))

        try:
            for change in run.changes:
                if change.old:
                    self.runtime.restore_version(change.service, change.old)
            result = self.restore.restore(run.bundle_id, force=True, cancel=cancel)
        except LifecycleError as e:
            self._fail(run, RollbackFailed(run.bundle_id, str(e), cause=e))
            return

        if result.success:
            self._transition(run, RunPhase.ROLLED_BACK, f"restored {run.bundle_id}")
            self._announce(run)
        else:
            failure = RollbackFailed(run.bundle_id, f"step '{result.failed_step}': {result.error}")
            if result.sidecars:
                failure.details["sidecars"] = [str(p) for p in result.sidecars]
            self._fail(run, failure)

    def _fail(self, run: UpdateRun, error: Exception) -> None:
        if run.is_terminal:
            return
        run.error = str(error)
        run.error_code = getattr(error, "code", type(error).__name__)
        self._transition(run, RunPhase.FAILED, getattr(error, "message", str(error)))
        self._announce(run)

    def _prune_pre_update(self) -> None:
        try:
            self.catalog.prune(self.config.pre_update_retention_days, prefix=PRE_UPDATE_NAME)
        except (OSError, LifecycleError) as e:
            logger.warning(f"Pruning old pre-update bundles failed: {e}")

    def _announce(self, run: UpdateRun) -> None:
        """Log the run summary and notify the terminal outcome."""
        summary = run.summary()
        logger.info(summary)

        subject, severity = {
            RunPhase.NO_UPDATE: ("No update available", Severity.INFO),
            RunPhase.COMMITTED: ("Update completed", Severity.SUCCESS),
            RunPhase.ROLLED_BACK: ("Update rolled back", Severity.WARNING),
            RunPhase.FAILED: ("Update failed", Severity.ERROR),
        }[run.phase]
        if run.error_code == "ROLLBACK_FAILED":
            subject = "Rollback failed, manual intervention required"
        self.sink.notify(Notification(subject, summary, severity))
