"""
Backup Bundle Model

A Bundle is one point-in-time backup directory holding typed Artifacts and a
``metadata.json`` describing them.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

METADATA_FILE = "metadata.json"
METADATA_VERSION = 1

STAGING_DIR = ".staging"
PARTIAL_DIR = ".partial"
SIDECAR_DIR = ".sidecars"
TRASH_DIR = ".trash"

ID_TIME_FORMAT = "%Y%m%d_%H%M%S"


class ArtifactKind(Enum):
    """Type of payload inside a bundle."""
    FILESYSTEM_ARCHIVE = "filesystem_archive"
    RELATIONAL_DUMP = "relational_dump"
    KV_SNAPSHOT = "kv_snapshot"
    CONFIG_COPY = "config_copy"


# Restore order: files first, the database last so it is loaded into a
# fully stopped stack after everything else is in place.
RESTORE_ORDER = [
    ArtifactKind.FILESYSTEM_ARCHIVE,
    ArtifactKind.KV_SNAPSHOT,
    ArtifactKind.CONFIG_COPY,
    ArtifactKind.RELATIONAL_DUMP,
]


class BundleStatus(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


@dataclass
class ArtifactRecord:
    """One captured payload, path relative to the bundle directory."""
    kind: ArtifactKind
    source: str
    path: str
    size: int = 0
    checksum: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind.value,
            "source": self.source,
            "path": self.path,
            "size": self.size,
            "checksum": self.checksum,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ArtifactRecord":
        return cls(
            kind=ArtifactKind(data["kind"]),
            source=data.get("source", data["kind"]),
            path=data["path"],
            size=int(data.get("size", 0)),
            checksum=data.get("checksum", ""),
            error=data.get("error"),
        )


@dataclass
class Bundle:
    """A backup bundle on disk."""
    id: str
    path: Path
    created_at: datetime
    status: BundleStatus = BundleStatus.COMPLETE
    artifacts: List[ArtifactRecord] = field(default_factory=list)
    versions: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        """Bundle name without the timestamp suffix."""
        return split_bundle_id(self.id)[0]

    @property
    def is_complete(self) -> bool:
        return self.status is BundleStatus.COMPLETE

    @property
    def total_size(self) -> int:
        return sum(a.size for a in self.artifacts)

    @property
    def failures(self) -> Dict[str, str]:
        return {a.source: a.error for a in self.artifacts if a.error}

    @property
    def age_str(self) -> str:
        """Get human-readable age."""
        delta = datetime.now() - self.created_at
        if delta.days > 0:
            return f"{delta.days} days ago"
        elif delta.seconds > 3600:
            return f"{delta.seconds // 3600} hours ago"
        elif delta.seconds > 60:
            return f"{delta.seconds // 60} minutes ago"
        else:
            return "Just now"

    @property
    def size_str(self) -> str:
        return format_size(self.total_size)

    def artifact(self, kind: ArtifactKind) -> Optional[ArtifactRecord]:
        for record in self.artifacts:
            if record.kind is kind:
                return record
        return None

    def to_metadata(self) -> dict:
        return {
            "version": METADATA_VERSION,
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "versions": self.versions,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_metadata(cls, path: Path, data: dict) -> "Bundle":
        return cls(
            id=data.get("id", path.name),
            path=path,
            created_at=datetime.fromisoformat(data["created_at"]),
            status=BundleStatus(data.get("status", BundleStatus.COMPLETE.value)),
            artifacts=[ArtifactRecord.from_dict(a) for a in data.get("artifacts", [])],
            versions=dict(data.get("versions", {})),
        )


@dataclass
class ValidationResult:
    """Outcome of validating a bundle."""
    bundle_id: str
    issues: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def __bool__(self) -> bool:
        return self.valid


def make_bundle_id(name: str, when: datetime) -> str:
    return f"{name}_{when.strftime(ID_TIME_FORMAT)}"


def split_bundle_id(bundle_id: str):
    """Split ``name_YYYYmmdd_HHMMSS`` into (name, timestamp or None)."""
    parts = bundle_id.rsplit("_", 2)
    if len(parts) == 3:
        try:
            return parts[0], datetime.strptime(f"{parts[1]}_{parts[2]}", ID_TIME_FORMAT)
        except ValueError:
            pass
    return bundle_id, None


def format_size(bytes_val: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_val < 1024:
            return f"{bytes_val:.1f} {unit}"
        bytes_val /= 1024
    return f"{bytes_val:.1f} TB"


def _iter_files(path: Path):
    if path.is_file():
        yield path, path.name
        return
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files):
            full = Path(root) / name
            yield full, full.relative_to(path).as_posix()


def path_size(path: Path) -> int:
    """Size of a file, or total size of the files below a directory."""
    return sum(f.stat().st_size for f, _ in _iter_files(path))


def path_checksum(path: Path) -> str:
    """
    sha256 of a file, or of a directory tree.

    Directory checksums cover relative names and contents in sorted order.
    """
    digest = hashlib.sha256()
    directory = path.is_dir()
    for full, rel in _iter_files(path):
        if directory:
            digest.update(rel.encode("utf-8") + b"\0")
        with open(full, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
    return digest.hexdigest()
