"""
Snapshot Catalog

Lists, validates and retires the bundles in the backup directory. Only
promoted bundles are visible; staging and quarantined partial captures are
ignored.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from common.exceptions import BundleNotFound
from utils.atomic_write import atomic_write_text

from .models import (
    METADATA_FILE, TRASH_DIR, Bundle, BundleStatus, ValidationResult,
    path_checksum, path_size, split_bundle_id,
)
from .sources import DataSource, artifact_issues, find_source

logger = logging.getLogger(__name__)

LAST_PRE_UPDATE_MARKER = ".last_pre_update_backup"


class SnapshotCatalog:
    """
    Read side of the backup directory plus retention.

    Example:
        catalog = SnapshotCatalog(config.backup_dir)
        for bundle in catalog.list():
            print(bundle.id, catalog.validate(bundle.id).valid)
        catalog.prune(retention_days=30)
    """

    def __init__(self, backup_dir: Path, sources: Optional[List[DataSource]] = None):
        self.backup_dir = Path(backup_dir)
        self.sources = list(sources or [])

    def _bundle_dirs(self) -> List[Path]:
        if not self.backup_dir.is_dir():
            return []
        return [
            p for p in self.backup_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        ]

    def _load(self, path: Path) -> Bundle:
        """Bundle from its directory; falls back to the directory when metadata is unusable."""
        try:
            data = json.loads((path / METADATA_FILE).read_text(encoding="utf-8"))
            return Bundle.from_metadata(path, data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"No usable metadata in {path}: {e}")

        _, stamp = split_bundle_id(path.name)
        created_at = stamp or datetime.fromtimestamp(path.stat().st_mtime)
        return Bundle(id=path.name, path=path, created_at=created_at, status=BundleStatus.PARTIAL)

    def list(self) -> List[Bundle]:
        """All promoted bundles, newest first."""
        bundles = [self._load(p) for p in self._bundle_dirs()]
        bundles.sort(key=lambda b: (b.created_at, b.id), reverse=True)
        return bundles

    def ids(self) -> List[str]:
        return [b.id for b in self.list()]

    def get(self, bundle_id: str) -> Bundle:
        path = self.backup_dir / bundle_id
        if bundle_id.startswith(".") or "/" in bundle_id or not path.is_dir():
            raise BundleNotFound(bundle_id)
        return self._load(path)

    def latest(self, prefix: Optional[str] = None) -> Optional[Bundle]:
        for bundle in self.list():
            if prefix is None or bundle.id.startswith(prefix):
                return bundle
        return None

    def validate(self, bundle_id: str, verify_checksums: bool = False) -> ValidationResult:
        """
        Check that a bundle is restorable.

        A bundle is invalid if its metadata is missing or unreadable, it is
        not complete, or any listed artifact is absent or empty. With
        ``verify_checksums`` every artifact is also re-hashed.
        """
        result = ValidationResult(bundle_id)
        path = self.backup_dir / bundle_id
        if bundle_id.startswith(".") or "/" in bundle_id or not path.is_dir():
            raise BundleNotFound(bundle_id)

        metadata_file = path / METADATA_FILE
        if not metadata_file.exists():
            result.issues.append(f"{METADATA_FILE} is missing")
            return result
        try:
            bundle = Bundle.from_metadata(path, json.loads(metadata_file.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            result.issues.append(f"{METADATA_FILE} is unreadable: {e}")
            return result

        if not bundle.is_complete:
            result.issues.append(f"bundle status is {bundle.status.value}")
        if not bundle.artifacts:
            result.issues.append("bundle lists no artifacts")

        for record in bundle.artifacts:
            source = find_source(self.sources, record)
            if source is not None:
                issues = source.validate(path, record)
            else:
                issues = artifact_issues(path, record)
            result.issues.extend(issues)
            if issues or not verify_checksums:
                continue

            artifact = path / record.path
            if record.size and path_size(artifact) != record.size:
                result.issues.append(f"{record.path}: size differs from metadata")
            elif record.checksum and path_checksum(artifact) != record.checksum:
                result.issues.append(f"{record.path}: checksum mismatch")

        if result.issues:
            logger.warning(f"Bundle {bundle_id} is invalid: {'; '.join(result.issues)}")
        return result

    def prune(
        self,
        retention_days: int,
        prefix: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Delete bundles older than the retention period.

        The newest bundle of the catalog is always kept, whatever its age.

        Args:
            retention_days: Age in days beyond which bundles are deleted
            prefix: Only consider bundle ids starting with this
            now: Reference time (default: now)

        Returns:
            Ids of the deleted bundles
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=retention_days)
        self._empty_trash()
        bundles = self.list()
        if not bundles:
            return []

        newest = bundles[0].id
        deleted = []
        for bundle in bundles[1:]:
            if prefix is not None and not bundle.id.startswith(prefix):
                continue
            if bundle.created_at >= cutoff:
                continue
            self._retire(bundle.path)
            deleted.append(bundle.id)
            logger.info(f"Pruned bundle {bundle.id} (created {bundle.created_at:%Y-%m-%d %H:%M})")

        if deleted:
            logger.info(f"Pruned {len(deleted)} bundles older than {retention_days} days, kept {newest}")
        else:
            logger.debug("Nothing to prune")
        return deleted

    def _retire(self, path: Path) -> None:
        """Rename a bundle out of the listed namespace, then delete it."""
        trash = self.backup_dir / TRASH_DIR
        trash.mkdir(parents=True, exist_ok=True)
        target = trash / path.name
        if target.exists():
            shutil.rmtree(target)
        os.rename(path, target)
        shutil.rmtree(target)

    def _empty_trash(self) -> None:
        """Finish deletions an earlier prune left behind."""
        trash = self.backup_dir / TRASH_DIR
        if not trash.is_dir():
            return
        for leftover in trash.iterdir():
            logger.info(f"Removing leftover {leftover.name} from an interrupted prune")
            if leftover.is_dir() and not leftover.is_symlink():
                shutil.rmtree(leftover)
            else:
                leftover.unlink()

    # --- last pre-update marker ---

    @property
    def marker_file(self) -> Path:
        return self.backup_dir / LAST_PRE_UPDATE_MARKER

    def mark_last_pre_update(self, bundle_id: str) -> None:
        atomic_write_text(self.marker_file, bundle_id + "\n")

    def last_pre_update(self) -> Optional[str]:
        """Id of the last pre-update bundle, if it still exists."""
        try:
            bundle_id = self.marker_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if bundle_id and (self.backup_dir / bundle_id).is_dir():
            return bundle_id
        return None

