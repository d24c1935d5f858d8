"""
r8-lifecycle Snapshots

Backup bundles: capture, catalog and restore.
"""

from .models import (
    ArtifactKind, ArtifactRecord, Bundle, BundleStatus, ValidationResult,
)
from .sources import (
    DataSource, FilesystemSource, KvSource, RelationalSource, ConfigSource,
    default_sources,
)
from .capture import SnapshotCapture
from .catalog import SnapshotCatalog
from .restore import RestoreExecutor, RestoreOptions, RestoreResult

__all__ = [
    "ArtifactKind",
    "ArtifactRecord",
    "Bundle",
    "BundleStatus",
    "ValidationResult",
    "DataSource",
    "FilesystemSource",
    "KvSource",
    "RelationalSource",
    "ConfigSource",
    "default_sources",
    "SnapshotCapture",
    "SnapshotCatalog",
    "RestoreExecutor",
    "RestoreOptions",
    "RestoreResult",
]
