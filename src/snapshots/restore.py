"""
Restore Executor

Reverses a bundle back into the live stores. Live data is always moved aside
to a timestamped sidecar before anything is written, and sidecars are only
removed once every selected artifact is back in place.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from common.config import DeploymentConfig
from common.exceptions import (
    ConfirmationRequired, InvalidBundle, LifecycleError, OperationCancelled,
    RestoreFailed, ServiceUnavailable,
)
from utils.polling import CancellationToken, PollTimeout, poll_until

from .catalog import SnapshotCatalog
from .models import RESTORE_ORDER, ArtifactKind, ArtifactRecord
from .sources import DataSource, find_source

logger = logging.getLogger(__name__)


@dataclass
class RestoreOptions:
    """Which artifact kinds to leave untouched."""
    skip_data: bool = False
    skip_db: bool = False
    skip_kv: bool = False
    skip_config: bool = False

    def skips(self, kind: ArtifactKind) -> bool:
        return {
            ArtifactKind.FILESYSTEM_ARCHIVE: self.skip_data,
            ArtifactKind.RELATIONAL_DUMP: self.skip_db,
            ArtifactKind.KV_SNAPSHOT: self.skip_kv,
            ArtifactKind.CONFIG_COPY: self.skip_config,
        }[kind]

    @classmethod
    def only(cls, kind: ArtifactKind) -> "RestoreOptions":
        """Options restoring a single artifact kind."""
        return cls(
            skip_data=kind is not ArtifactKind.FILESYSTEM_ARCHIVE,
            skip_db=kind is not ArtifactKind.RELATIONAL_DUMP,
            skip_kv=kind is not ArtifactKind.KV_SNAPSHOT,
            skip_config=kind is not ArtifactKind.CONFIG_COPY,
        )


@dataclass
class RestoreResult:
    """Outcome of a restore."""
    bundle_id: str
    success: bool = False
    restored: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    sidecars: List[Path] = field(default_factory=list)
    health: Optional[object] = None

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "success": self.success,
            "restored": self.restored,
            "failed_step": self.failed_step,
            "error": self.error,
            "sidecars": [str(p) for p in self.sidecars],
            "health": self.health.to_dict() if self.health is not None else None,
        }


ConfirmCallback = Callable[[str], bool]


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


class RestoreExecutor:
    """
    Restores bundles into the live deployment.

    Example:
        executor = RestoreExecutor(config, catalog, runtime, probe, sources)
        result = executor.restore("manual_20250101_120000", force=True)
        if not result.success:
            print(result.failed_step, result.sidecars)
    """

    def __init__(
        self,
        config: DeploymentConfig,
        catalog: SnapshotCatalog,
        runtime,
        probe,
        sources: List[DataSource],
        verify_checksums: bool = True,
    ):
        self.config = config
        self.catalog = catalog
        self.runtime = runtime
        self.probe = probe
        self.sources = list(sources)
        self.verify_checksums = verify_checksums

    def plan(self, bundle_id: str, options: RestoreOptions) -> List[ArtifactRecord]:
        """Artifacts that will be restored, in restore order."""
        bundle = self.catalog.get(bundle_id)
        ordered = sorted(bundle.artifacts, key=lambda a: RESTORE_ORDER.index(a.kind))
        return [a for a in ordered if not options.skips(a.kind)]

    def restore(
        self,
        bundle_id: str,
        options: Optional[RestoreOptions] = None,
        force: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RestoreResult:
        """
        Restore a bundle.

        Args:
            bundle_id: Bundle to restore
            options: Artifact kinds to skip
            force: Skip the confirmation
            confirm: Called with a prompt when not forced; must return True
            cancel: Optional cancellation token

        Returns:
            RestoreResult with the failing step and preserved sidecars on failure

        Raises:
            BundleNotFound: If the bundle does not exist
            InvalidBundle: If the bundle fails validation (nothing is touched)
            ConfirmationRequired: If not forced and not confirmed
        """
        options = options or RestoreOptions()
        cancel = cancel or CancellationToken()

        validation = self.catalog.validate(bundle_id, verify_checksums=self.verify_checksums)
        if not validation.valid:
            raise InvalidBundle(bundle_id, validation.issues)

        steps = self.plan(bundle_id, options)
        if not steps:
            raise RestoreFailed("plan", "no artifacts selected for restore")

        if not force:
            names = ", ".join(s.source for s in steps)
            prompt = f"Restore {names} from {bundle_id}? Current data will be replaced."
            if confirm is None or not confirm(prompt):
                raise ConfirmationRequired(bundle_id)

        result = RestoreResult(bundle_id=bundle_id)
        bundle_dir = self.catalog.backup_dir / bundle_id
        stamp = int(time.time())
        services = self.config.services

        logger.info(f"Restoring {bundle_id}: {', '.join(s.source for s in steps)}")
        try:
            self.runtime.stop(services, timeout=self.config.stop_timeout)
        except LifecycleError as e:
            result.failed_step = "stop"
            result.error = str(e)
            logger.error(f"Could not stop services, nothing restored: {e}")
            return result

        for record in steps:
            step = record.source
            try:
                cancel.raise_if_cancelled("restore")
                source = find_source(self.sources, record)
                if source is None:
                    raise RestoreFailed(step, f"no source handles {record.kind.value}")
                if record.kind is ArtifactKind.RELATIONAL_DUMP:
                    self._start_database(source, cancel)
                result.sidecars.extend(source.restore(bundle_dir, record, stamp))
                result.restored.append(step)
            except RestoreFailed as e:
                result.sidecars.extend(e.sidecars)
                result.failed_step = e.step
                result.error = str(e)
                break
            except LifecycleError as e:
                result.failed_step = step
                result.error = str(e)
                break

        if result.failed_step is None:
            for sidecar in result.sidecars:
                _remove(sidecar)
            result.sidecars = []
        else:
            logger.error(
                f"Restore stopped at {result.failed_step}: {result.error}. "
                f"Restored: {result.restored or 'nothing'}. "
                f"Previous data kept in: {[str(p) for p in result.sidecars]}"
            )

        self._restart(result, cancel)
        result.success = result.failed_step is None
        if result.success:
            logger.info(f"Restore of {bundle_id} complete")
        return result

    def _start_database(self, source: DataSource, cancel: CancellationToken) -> None:
        """Start only the database and wait until it accepts connections."""
        service = self.config.postgres_service
        self.runtime.start([service])
        report = self.probe.await_healthy(
            [service],
            timeout=self.config.health_timeout,
            poll_interval=self.config.health_poll_interval,
            cancel=cancel,
        )
        if not report.healthy:
            raise RestoreFailed(source.name, f"database did not start: {report.describe()}")

        def ready():
            try:
                source.check_available()
                return True
            except ServiceUnavailable:
                return None

        try:
            poll_until(
                ready,
                timeout=self.config.health_timeout,
                interval=self.config.health_poll_interval,
                cancel=cancel,
                operation="database readiness",
                clock=self.probe.clock,
                sleep=self.probe.sleep,
            )
        except PollTimeout:
            raise RestoreFailed(source.name, "database is not accepting connections")

    def _restart(self, result: RestoreResult, cancel: CancellationToken) -> None:
        services = self.config.services
        try:
            self.runtime.start(services)
            report = self.probe.await_healthy(
                services,
                timeout=self.config.health_timeout,
                poll_interval=self.config.health_poll_interval,
                cancel=cancel,
            )
        except OperationCancelled as e:
            if result.failed_step is None:
                result.failed_step = "health"
                result.error = str(e)
            return
        except LifecycleError as e:
            if result.failed_step is None:
                result.failed_step = "start"
                result.error = str(e)
            logger.error(f"Could not restart services: {e}")
            return

        result.health = report
        if not report.healthy and result.failed_step is None:
            result.failed_step = "health"
            result.error = str(report.to_error(self.config.health_timeout))
