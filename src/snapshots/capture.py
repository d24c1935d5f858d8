"""
Snapshot Capture

Produces one Bundle from all configured data sources. Artifacts are written
into a staging directory and the bundle only becomes visible to the catalog
once every artifact succeeded and the metadata is on disk.
"""

from __future__ import annotations

import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from common.config import DeploymentConfig
from common.decorators import timed
from common.exceptions import CaptureError, DiskFull, LifecycleError, OperationCancelled
from utils.atomic_write import atomic_write_json, promote_directory
from utils.polling import CancellationToken

from .models import (
    METADATA_FILE, PARTIAL_DIR, STAGING_DIR, ArtifactRecord, Bundle, BundleStatus,
    make_bundle_id, path_checksum, path_size,
)
from .sources import DataSource

logger = logging.getLogger(__name__)


class SnapshotCapture:
    """
    Captures consistent backups across heterogeneous data sources.

    Example:
        capture = SnapshotCapture(config, runtime, default_sources(config, pg, kv))
        bundle = capture.capture("manual")
        if not bundle.is_complete:
            print(bundle.failures)
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runtime,
        sources: List[DataSource],
        max_workers: Optional[int] = None,
    ):
        self.config = config
        self.runtime = runtime
        self.sources = list(sources)
        self.backup_dir = config.backup_dir
        self.max_workers = max_workers

    def select(self, source_filter: Optional[Iterable[str]] = None) -> List[DataSource]:
        """Sources matching a filter of source names or artifact kinds."""
        if not source_filter:
            return list(self.sources)
        wanted = set(source_filter)
        selected = [s for s in self.sources if s.name in wanted or s.kind.value in wanted]
        if not selected:
            raise CaptureError(
                f"No data source matches {', '.join(sorted(wanted))}",
                code="NO_SOURCES",
                details={"available": [s.name for s in self.sources]},
            )
        return selected

    def check_disk_space(self) -> int:
        """
        Raise DiskFull if the backup filesystem is below the threshold.

        Returns:
            Free bytes
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        free = shutil.disk_usage(self.backup_dir).free
        if free < self.config.min_free_bytes:
            raise DiskFull(str(self.backup_dir), free, self.config.min_free_bytes)
        return free

    def _new_bundle_id(self, name: str, when: datetime) -> str:
        base = make_bundle_id(name, when)
        bundle_id = base
        counter = 1
        while any(
            (root / bundle_id).exists()
            for root in (self.backup_dir, self.backup_dir / STAGING_DIR, self.backup_dir / PARTIAL_DIR)
        ):
            bundle_id = f"{name}-{counter}_{when.strftime('%Y%m%d_%H%M%S')}"
            counter += 1
        return bundle_id

    def _versions(self) -> Dict[str, Optional[str]]:
        try:
            return self.runtime.versions()
        except LifecycleError as e:
            logger.warning(f"Could not read component versions: {e}")
            return {}

    def _capture_one(
        self, source: DataSource, staging: Path, cancel: CancellationToken
    ) -> ArtifactRecord:
        try:
            record = source.capture(staging, cancel)
        except OperationCancelled:
            raise
        except LifecycleError as e:
            logger.error(f"Capture of {source.name} failed: {e}")
            return ArtifactRecord(source.kind, source.name, source.filename, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error capturing {source.name}")
            return ArtifactRecord(source.kind, source.name, source.filename, error=repr(e))

        artifact_path = staging / record.path
        record.size = path_size(artifact_path)
        record.checksum = path_checksum(artifact_path)
        logger.info(f"Captured {source.name}: {record.path} ({record.size} bytes)")
        return record

    @timed
    def capture(
        self,
        name: str,
        source_filter: Optional[Iterable[str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Bundle:
        """
        Capture a new bundle.

        Args:
            name: Bundle name, the id gets a timestamp suffix
            source_filter: Source names or artifact kinds to include (default: all)
            cancel: Optional cancellation token

        Returns:
            The bundle. A ``partial`` bundle is quarantined under ``.partial``
            and never listed by the catalog.

        Raises:
            DiskFull: If free space is below the configured minimum
            ServiceUnavailable: If any targeted source is unreachable
            OperationCancelled: If cancelled while capturing
        """
        cancel = cancel or CancellationToken()
        targets = self.select(source_filter)

        self.check_disk_space()
        for source in targets:
            source.check_available()

        created_at = datetime.now()
        bundle_id = self._new_bundle_id(name, created_at)
        staging = self.backup_dir / STAGING_DIR / bundle_id
        staging.mkdir(parents=True)
        logger.info(f"Capturing bundle {bundle_id} from {', '.join(s.name for s in targets)}")

        try:
            workers = self.max_workers or len(targets)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="capture") as pool:
                futures = [pool.submit(self._capture_one, s, staging, cancel) for s in targets]
                # Join every capture before deciding the outcome
                outcomes = []
                for future in futures:
                    try:
                        outcomes.append(future.result())
                    except OperationCancelled as e:
                        outcomes.append(e)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        cancelled = [o for o in outcomes if isinstance(o, OperationCancelled)]
        records = [o for o in outcomes if isinstance(o, ArtifactRecord)]
        status = (
            BundleStatus.COMPLETE
            if not cancelled and all(r.ok for r in records)
            else BundleStatus.PARTIAL
        )

        bundle = Bundle(
            id=bundle_id,
            path=staging,
            created_at=created_at,
            status=status,
            artifacts=records,
            versions=self._versions(),
        )
        atomic_write_json(staging / METADATA_FILE, bundle.to_metadata())

        if bundle.is_complete:
            bundle.path = promote_directory(staging, self.backup_dir / bundle_id)
            logger.info(f"Bundle {bundle_id} complete ({bundle.size_str})")
        else:
            bundle.path = promote_directory(staging, self.backup_dir / PARTIAL_DIR / bundle_id)
            logger.error(
                f"Bundle {bundle_id} is partial, quarantined in {bundle.path}: {bundle.failures}"
            )

        if cancelled:
            raise cancelled[0]
        return bundle
