"""
Tests for SnapshotCatalog: listing, validation, retention and the
last-pre-update marker.
"""

import json
from datetime import datetime, timedelta

import pytest


def make_bundle(backup_dir, bundle_id, created_at, status="complete"):
    """Write a minimal one-artifact bundle directly to disk."""
    from snapshots.models import (
        METADATA_FILE, ArtifactKind, ArtifactRecord, Bundle, BundleStatus,
        path_checksum, path_size,
    )

    path = backup_dir / bundle_id
    (path / "config").mkdir(parents=True)
    (path / "config" / ".env").write_text("POSTGRES_DB=n8n\n")
    record = ArtifactRecord(
        ArtifactKind.CONFIG_COPY, "config", "config",
        size=path_size(path / "config"),
        checksum=path_checksum(path / "config"),
    )
    bundle = Bundle(
        id=bundle_id, path=path, created_at=created_at,
        status=BundleStatus(status), artifacts=[record],
    )
    (path / METADATA_FILE).write_text(json.dumps(bundle.to_metadata()))
    return bundle


NOW = datetime(2025, 6, 1, 12, 0, 0)


class TestListing:

    @pytest.mark.unit
    def test_newest_first(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", datetime(2025, 1, 1, 12))
        make_bundle(tmp_path, "manual_20250301_120000", datetime(2025, 3, 1, 12))
        make_bundle(tmp_path, "pre-update_20250201_030000", datetime(2025, 2, 1, 3))

        catalog = SnapshotCatalog(tmp_path)

        assert catalog.ids() == [
            "manual_20250301_120000",
            "pre-update_20250201_030000",
            "manual_20250101_120000",
        ]
        assert catalog.latest().id == "manual_20250301_120000"
        assert catalog.latest("pre-update").id == "pre-update_20250201_030000"
        assert catalog.latest("nightly") is None

    @pytest.mark.unit
    def test_hidden_directories_are_ignored(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path / ".staging", "manual_20250101_120000", datetime(2025, 1, 1))
        make_bundle(tmp_path / ".partial", "manual_20250102_120000", datetime(2025, 1, 2))
        (tmp_path / ".sidecars").mkdir()

        catalog = SnapshotCatalog(tmp_path)

        assert catalog.list() == []

    @pytest.mark.unit
    def test_missing_backup_dir(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog
        assert SnapshotCatalog(tmp_path / "nope").list() == []

    @pytest.mark.unit
    def test_bundle_without_metadata_uses_id_timestamp(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        (tmp_path / "manual_20250101_120000").mkdir()
        bundle = SnapshotCatalog(tmp_path).get("manual_20250101_120000")

        assert bundle.created_at == datetime(2025, 1, 1, 12, 0, 0)
        assert not bundle.is_complete

    @pytest.mark.unit
    def test_get_unknown(self, tmp_path):
        from common.exceptions import BundleNotFound
        from snapshots.catalog import SnapshotCatalog

        (tmp_path / ".partial").mkdir()
        catalog = SnapshotCatalog(tmp_path)

        with pytest.raises(BundleNotFound):
            catalog.get("manual_20990101_000000")
        with pytest.raises(BundleNotFound):
            catalog.get(".partial")


class TestValidation:

    @pytest.mark.integration
    def test_fresh_capture_is_valid(self, stack):
        bundle = stack.capture.capture("manual")

        assert stack.catalog.validate(bundle.id).valid
        assert stack.catalog.validate(bundle.id, verify_checksums=True).valid

    @pytest.mark.integration
    def test_truncated_dump_is_invalid(self, stack):
        bundle = stack.capture.capture("manual")
        (bundle.path / "postgres_dump.sql.gz").write_bytes(b"")

        result = stack.catalog.validate(bundle.id)

        assert not result.valid
        assert "postgres_dump.sql.gz: empty" in result.issues

    @pytest.mark.integration
    def test_missing_artifact_is_invalid(self, stack):
        bundle = stack.capture.capture("manual")
        (bundle.path / "redis_data.tar.gz").unlink()

        result = stack.catalog.validate(bundle.id)

        assert result.issues == ["redis_data.tar.gz: missing"]

    @pytest.mark.integration
    def test_non_gzip_dump_is_invalid(self, stack):
        bundle = stack.capture.capture("manual")
        (bundle.path / "postgres_dump.sql.gz").write_bytes(b"DROP TABLE workflows;")

        result = stack.catalog.validate(bundle.id)

        assert "postgres_dump.sql.gz: not gzip data" in result.issues

    @pytest.mark.integration
    def test_checksum_mismatch_needs_deep_validation(self, stack):
        bundle = stack.capture.capture("manual")
        archive = bundle.path / "n8n_data.tar.gz"
        data = bytearray(archive.read_bytes())
        data[-1] ^= 0xFF
        archive.write_bytes(bytes(data))

        assert stack.catalog.validate(bundle.id).valid
        deep = stack.catalog.validate(bundle.id, verify_checksums=True)
        assert deep.issues == ["n8n_data.tar.gz: checksum mismatch"]

    @pytest.mark.unit
    def test_missing_metadata(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW)
        (tmp_path / "manual_20250101_120000" / "metadata.json").unlink()

        result = SnapshotCatalog(tmp_path).validate("manual_20250101_120000")
        assert result.issues == ["metadata.json is missing"]

    @pytest.mark.unit
    def test_unreadable_metadata(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW)
        (tmp_path / "manual_20250101_120000" / "metadata.json").write_text("{broken")

        result = SnapshotCatalog(tmp_path).validate("manual_20250101_120000")
        assert not result
        assert "unreadable" in result.issues[0]

    @pytest.mark.unit
    def test_partial_status_is_invalid(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW, status="partial")

        result = SnapshotCatalog(tmp_path).validate("manual_20250101_120000")
        assert result.issues == ["bundle status is partial"]


class TestPrune:

    @pytest.mark.unit
    def test_deletes_old_bundles(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250401_120000", NOW - timedelta(days=61))
        make_bundle(tmp_path, "manual_20250420_120000", NOW - timedelta(days=42))
        make_bundle(tmp_path, "manual_20250530_120000", NOW - timedelta(days=2))

        catalog = SnapshotCatalog(tmp_path)
        deleted = catalog.prune(30, now=NOW)

        assert sorted(deleted) == ["manual_20250401_120000", "manual_20250420_120000"]
        assert catalog.ids() == ["manual_20250530_120000"]

    @pytest.mark.unit
    def test_never_deletes_newest(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20240101_120000", NOW - timedelta(days=500))
        make_bundle(tmp_path, "manual_20240201_120000", NOW - timedelta(days=400))

        catalog = SnapshotCatalog(tmp_path)
        deleted = catalog.prune(30, now=NOW)

        assert deleted == ["manual_20240101_120000"]
        assert catalog.ids() == ["manual_20240201_120000"]

    @pytest.mark.unit
    def test_idempotent(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW - timedelta(days=90))
        make_bundle(tmp_path, "manual_20250530_120000", NOW - timedelta(days=1))

        catalog = SnapshotCatalog(tmp_path)
        first = catalog.prune(30, now=NOW)
        second = catalog.prune(30, now=NOW)

        assert first == ["manual_20250101_120000"]
        assert second == []

    @pytest.mark.unit
    def test_prefix_limits_scope(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW - timedelta(days=90))
        make_bundle(tmp_path, "pre-update_20250102_030000", NOW - timedelta(days=89))
        make_bundle(tmp_path, "pre-update_20250531_030000", NOW - timedelta(days=1))

        catalog = SnapshotCatalog(tmp_path)
        deleted = catalog.prune(7, prefix="pre-update", now=NOW)

        assert deleted == ["pre-update_20250102_030000"]
        assert "manual_20250101_120000" in catalog.ids()

    @pytest.mark.unit
    def test_interrupted_prune_hides_bundle(self, tmp_path):
        from unittest.mock import patch
        from common.exceptions import BundleNotFound
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "manual_20250101_120000", NOW - timedelta(days=90))
        make_bundle(tmp_path, "manual_20250530_120000", NOW - timedelta(days=1))
        catalog = SnapshotCatalog(tmp_path)

        def interrupted_rmtree(path, *args, **kwargs):
            (path / "config" / ".env").unlink()
            raise KeyboardInterrupt

        with patch("snapshots.catalog.shutil.rmtree", side_effect=interrupted_rmtree):
            with pytest.raises(KeyboardInterrupt):
                catalog.prune(30, now=NOW)

        # The half-deleted bundle is out of sight
        assert catalog.ids() == ["manual_20250530_120000"]
        with pytest.raises(BundleNotFound):
            catalog.validate("manual_20250101_120000")
        assert (tmp_path / ".trash" / "manual_20250101_120000").is_dir()

        # The next prune finishes the job
        assert catalog.prune(30, now=NOW) == []
        assert list((tmp_path / ".trash").iterdir()) == []

    @pytest.mark.unit
    def test_empty_catalog(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog
        assert SnapshotCatalog(tmp_path).prune(0) == []


class TestPreUpdateMarker:

    @pytest.mark.unit
    def test_marker_round_trip(self, tmp_path):
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "pre-update_20250531_030000", NOW)
        catalog = SnapshotCatalog(tmp_path)

        assert catalog.last_pre_update() is None
        catalog.mark_last_pre_update("pre-update_20250531_030000")
        assert catalog.last_pre_update() == "pre-update_20250531_030000"
        assert catalog.marker_file.name == ".last_pre_update_backup"

    @pytest.mark.unit
    def test_marker_for_deleted_bundle(self, tmp_path):
        import shutil
        from snapshots.catalog import SnapshotCatalog

        make_bundle(tmp_path, "pre-update_20250531_030000", NOW)
        catalog = SnapshotCatalog(tmp_path)
        catalog.mark_last_pre_update("pre-update_20250531_030000")
        shutil.rmtree(tmp_path / "pre-update_20250531_030000")

        assert catalog.last_pre_update() is None


class TestBundleModel:

    @pytest.mark.unit
    def test_split_bundle_id(self):
        from snapshots.models import split_bundle_id

        assert split_bundle_id("pre-update_20250531_030000") == (
            "pre-update", datetime(2025, 5, 31, 3, 0, 0)
        )
        assert split_bundle_id("weird") == ("weird", None)

    @pytest.mark.unit
    def test_metadata_round_trip(self, tmp_path):
        from snapshots.models import Bundle

        bundle = make_bundle(tmp_path, "manual_20250101_120000", NOW)
        loaded = Bundle.from_metadata(bundle.path, bundle.to_metadata())

        assert loaded.id == bundle.id
        assert loaded.created_at == NOW
        assert loaded.artifacts == bundle.artifacts
        assert loaded.name == "manual"

    @pytest.mark.unit
    def test_format_size(self):
        from snapshots.models import format_size

        assert format_size(512) == "512.0 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(5 * 1024 ** 3) == "5.0 GB"
