"""
Data Sources

Each kind of live data (workflow files, database, queue store, config files)
is one DataSource variant that knows how to capture itself into a bundle,
restore itself from one, and check its own artifact.
"""

from __future__ import annotations

import gzip
import logging
import shutil
import tarfile
import uuid
from pathlib import Path
from typing import List, Optional

from common.config import DeploymentConfig
from common.exceptions import (
    CaptureError, DumpFailed, LifecycleError, RestoreFailed,
    ServiceUnavailable, SnapshotTimeout,
)
from utils.atomic_write import move_aside
from utils.polling import CancellationToken, PollTimeout, poll_until

from .models import SIDECAR_DIR, ArtifactKind, ArtifactRecord, path_size

logger = logging.getLogger(__name__)


def artifact_issues(bundle_dir: Path, record: ArtifactRecord) -> List[str]:
    """Missing or empty artifact."""
    path = bundle_dir / record.path
    if not path.exists():
        return [f"{record.path}: missing"]
    if path_size(path) == 0:
        return [f"{record.path}: empty"]
    return []


class DataSource:
    """Capability interface shared by every source variant."""

    kind: ArtifactKind
    name: str
    filename: str

    def check_available(self) -> None:
        """Raise ServiceUnavailable if the source cannot be captured now."""

    def capture(self, staging_dir: Path, cancel: CancellationToken) -> ArtifactRecord:
        raise NotImplementedError

    def restore(self, bundle_dir: Path, record: ArtifactRecord, stamp: int) -> List[Path]:
        """
        Replace live data with the artifact.

        Returns:
            Sidecar paths holding the previous live data
        """
        raise NotImplementedError

    def validate(self, bundle_dir: Path, record: ArtifactRecord) -> List[str]:
        """Structural checks of the artifact; empty list if it looks fine."""
        return artifact_issues(bundle_dir, record)

    def _record(self, staging_dir: Path) -> ArtifactRecord:
        return ArtifactRecord(kind=self.kind, source=self.name, path=self.filename)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"


class FilesystemSource(DataSource):
    """A data directory archived as a gzip tarball."""

    kind = ArtifactKind.FILESYSTEM_ARCHIVE

    def __init__(self, name: str, data_dir: Path, filename: str):
        self.name = name
        self.data_dir = Path(data_dir)
        self.filename = filename

    def check_available(self) -> None:
        if not self.data_dir.is_dir():
            raise ServiceUnavailable(self.name, f"data directory {self.data_dir} not found")

    def capture(self, staging_dir: Path, cancel: CancellationToken) -> ArtifactRecord:
        cancel.raise_if_cancelled(f"{self.name} capture")
        target = staging_dir / self.filename
        logger.info(f"Archiving {self.data_dir} -> {self.filename}")
        with tarfile.open(target, "w:gz") as tar:
            tar.add(self.data_dir, arcname=self.data_dir.name)
        return self._record(staging_dir)

    def restore(self, bundle_dir: Path, record: ArtifactRecord, stamp: int) -> List[Path]:
        archive = bundle_dir / record.path
        parent = self.data_dir.parent
        parent.mkdir(parents=True, exist_ok=True)

        # Extract next to the live directory first, so a bad archive never
        # leaves the live path half-populated.
        scratch = parent / f".restore-{self.data_dir.name}-{uuid.uuid4().hex[:8]}"
        scratch.mkdir()
        sidecar = None
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(scratch, filter="data")
            entries = list(scratch.iterdir())
            if len(entries) != 1 or not entries[0].is_dir():
                raise RestoreFailed(self.name, f"{record.path} does not hold a single directory")

            sidecar = move_aside(self.data_dir, stamp)
            entries[0].rename(self.data_dir)
        except (OSError, tarfile.TarError) as e:
            if sidecar and not self.data_dir.exists():
                # Put the live data back where it was
                sidecar.rename(self.data_dir)
                sidecar = None
            raise RestoreFailed(
                self.name, str(e), cause=e, sidecars=[sidecar] if sidecar else []
            ) from e
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info(f"Restored {self.data_dir} from {record.path}")
        return [sidecar] if sidecar else []


class KvSource(FilesystemSource):
    """
    Redis data directory.

    A background save is triggered and its completion awaited before the
    directory is archived, so the archive never holds a dump mid-write.
    """

    kind = ArtifactKind.KV_SNAPSHOT

    def __init__(
        self,
        name: str,
        store,
        data_dir: Path,
        filename: str,
        timeout: float = 120.0,
        poll_interval: float = 1.0,
        clock=None,
        sleep=None,
    ):
        super().__init__(name, data_dir, filename)
        self.store = store
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.poll_options = {}
        if clock is not None:
            self.poll_options["clock"] = clock
        if sleep is not None:
            self.poll_options["sleep"] = sleep

    def check_available(self) -> None:
        if not self.store.ping():
            raise ServiceUnavailable(self.name, "store did not answer ping")
        super().check_available()

    def capture(self, staging_dir: Path, cancel: CancellationToken) -> ArtifactRecord:
        before = self.store.last_save_marker()
        self.store.trigger_async_save()
        logger.info(f"Waiting for {self.name} background save (last save {before})")

        def saved():
            marker = self.store.last_save_marker()
            return marker if marker != before else None

        try:
            marker = poll_until(
                saved,
                timeout=self.timeout,
                interval=self.poll_interval,
                cancel=cancel,
                operation=f"{self.name} snapshot",
                **self.poll_options,
            )
        except PollTimeout:
            raise SnapshotTimeout(self.name, self.timeout)

        logger.debug(f"{self.name} background save finished at {marker}")
        return super().capture(staging_dir, cancel)


class RelationalSource(DataSource):
    """Database captured as a gzip-compressed logical dump."""

    kind = ArtifactKind.RELATIONAL_DUMP

    def __init__(self, name: str, store, filename: str, sidecar_dir: Path):
        self.name = name
        self.store = store
        self.filename = filename
        self.sidecar_dir = Path(sidecar_dir)

    def check_available(self) -> None:
        if not self.store.ping():
            raise ServiceUnavailable(self.name, "database is not accepting connections")

    def capture(self, staging_dir: Path, cancel: CancellationToken) -> ArtifactRecord:
        cancel.raise_if_cancelled(f"{self.name} capture")
        target = staging_dir / self.filename
        logger.info(f"Dumping {self.name} -> {self.filename}")
        try:
            with gzip.open(target, "wb") as sink:
                self.store.dump(sink)
        except DumpFailed:
            raise
        except (LifecycleError, OSError) as e:
            raise DumpFailed(str(e), cause=e) from e
        return self._record(staging_dir)

    def restore(self, bundle_dir: Path, record: ArtifactRecord, stamp: int) -> List[Path]:
        self.sidecar_dir.mkdir(parents=True, exist_ok=True)
        sidecar = self.sidecar_dir / f"{self.name}_pre_restore.{stamp}.sql.gz"

        try:
            with gzip.open(sidecar, "wb") as sink:
                self.store.dump(sink)
        except (LifecycleError, OSError) as e:
            sidecar.unlink(missing_ok=True)
            raise RestoreFailed(self.name, f"could not save current database: {e}", cause=e) from e

        try:
            with gzip.open(bundle_dir / record.path, "rb") as source:
                self.store.load(source)
        except (LifecycleError, OSError, EOFError) as e:
            raise RestoreFailed(self.name, str(e), cause=e, sidecars=[sidecar]) from e

        logger.info(f"Loaded {record.path} into {self.name}")
        return [sidecar]

    def validate(self, bundle_dir: Path, record: ArtifactRecord) -> List[str]:
        issues = super().validate(bundle_dir, record)
        if issues:
            return issues
        with open(bundle_dir / record.path, "rb") as f:
            if f.read(2) != b"\x1f\x8b":
                return [f"{record.path}: not gzip data"]
        return []


class ConfigSource(DataSource):
    """Project configuration files copied into a ``config/`` subtree."""

    kind = ArtifactKind.CONFIG_COPY

    def __init__(self, name: str, project_dir: Path, entries: List[str], filename: str = "config"):
        self.name = name
        self.project_dir = Path(project_dir)
        self.entries = list(entries)
        self.filename = filename

    def check_available(self) -> None:
        if not self.project_dir.is_dir():
            raise ServiceUnavailable(self.name, f"project directory {self.project_dir} not found")

    def capture(self, staging_dir: Path, cancel: CancellationToken) -> ArtifactRecord:
        cancel.raise_if_cancelled(f"{self.name} capture")
        target = staging_dir / self.filename
        target.mkdir(parents=True, exist_ok=True)

        copied = 0
        for entry in self.entries:
            source = self.project_dir / entry
            if not source.exists():
                logger.warning(f"Config entry {entry} not found, skipping")
                continue
            destination = target / entry
            destination.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, destination, symlinks=True)
            else:
                shutil.copy2(source, destination)
            copied += 1

        if copied == 0:
            raise CaptureError("No configuration files found to back up", code="NOTHING_TO_CAPTURE")
        logger.info(f"Copied {copied} config entries")
        return self._record(staging_dir)

    def restore(self, bundle_dir: Path, record: ArtifactRecord, stamp: int) -> List[Path]:
        source_root = bundle_dir / record.path
        sidecars = []
        restored = 0
        try:
            for source in sorted(source_root.iterdir()):
                destination = self.project_dir / source.name
                sidecar = move_aside(destination, stamp)
                if sidecar:
                    sidecars.append(sidecar)
                if source.is_dir():
                    shutil.copytree(source, destination, symlinks=True)
                else:
                    shutil.copy2(source, destination)
                restored += 1
        except OSError as e:
            raise RestoreFailed(self.name, str(e), cause=e, sidecars=sidecars) from e
        logger.info(f"Restored {restored} config entries")
        return sidecars


def default_sources(
    config: DeploymentConfig,
    relational_store,
    kv_store,
) -> List[DataSource]:
    """The four sources of an n8n deployment, in capture order."""
    return [
        FilesystemSource("n8n", config.n8n_data_dir, "n8n_data.tar.gz"),
        RelationalSource(
            config.postgres_service,
            relational_store,
            "postgres_dump.sql.gz",
            sidecar_dir=config.backup_dir / SIDECAR_DIR,
        ),
        KvSource(
            config.redis_service,
            kv_store,
            config.redis_data_dir,
            "redis_data.tar.gz",
            timeout=config.snapshot_timeout,
        ),
        ConfigSource("config", config.project_dir, config.config_files),
    ]


def find_source(sources: List[DataSource], record: ArtifactRecord) -> Optional[DataSource]:
    """Source that produced an artifact: same kind, preferring the same name."""
    candidates = [s for s in sources if s.kind is record.kind]
    for source in candidates:
        if source.name == record.source:
            return source
    return candidates[0] if candidates else None
