"""
Tests for SnapshotCapture.

Captures run against the fake runtime, a sqlite-backed relational store and a
fake KV store, so the bundle contents are real files.
"""

import gzip
import json
import tarfile

import pytest


class TestCaptureComplete:

    @pytest.mark.integration
    def test_bundle_layout(self, stack, deployment):
        bundle = stack.capture.capture("manual")

        assert bundle.is_complete
        assert bundle.id.startswith("manual_")
        assert bundle.path == deployment.backup_dir / bundle.id
        for name in ("n8n_data.tar.gz", "postgres_dump.sql.gz", "redis_data.tar.gz",
                     "metadata.json"):
            assert (bundle.path / name).is_file(), name
        assert (bundle.path / "config" / ".env").is_file()
        assert (bundle.path / "config" / "nginx" / "nginx.conf").is_file()
        assert not (deployment.backup_dir / ".staging" / bundle.id).exists()

    @pytest.mark.integration
    def test_metadata_records_artifacts(self, stack, fake_runtime):
        bundle = stack.capture.capture("manual")

        metadata = json.loads((bundle.path / "metadata.json").read_text())
        assert metadata["status"] == "complete"
        assert metadata["versions"] == fake_runtime.images
        kinds = {a["kind"] for a in metadata["artifacts"]}
        assert kinds == {"filesystem_archive", "relational_dump", "kv_snapshot", "config_copy"}
        for artifact in metadata["artifacts"]:
            assert artifact["size"] > 0
            assert len(artifact["checksum"]) == 64
            assert "error" not in artifact

    @pytest.mark.integration
    def test_archive_contents(self, stack, deployment):
        bundle = stack.capture.capture("manual")

        with tarfile.open(bundle.path / "n8n_data.tar.gz") as tar:
            names = set(tar.getnames())
        assert "n8n/config" in names
        assert "n8n/nodes/package.json" in names

        with gzip.open(bundle.path / "postgres_dump.sql.gz", "rt") as f:
            dump = f.read()
        assert "daily report" in dump

    @pytest.mark.integration
    def test_kv_save_is_awaited(self, stack, fake_kv):
        bundle = stack.capture.capture("manual")

        assert fake_kv.saves == 1
        with tarfile.open(bundle.path / "redis_data.tar.gz") as tar:
            dump = tar.extractfile("redis/dump.rdb").read()
        assert dump == b"REDIS0011\x01"

    @pytest.mark.integration
    def test_ids_do_not_collide(self, stack):
        first = stack.capture.capture("manual")
        second = stack.capture.capture("manual")

        assert first.id != second.id
        assert len(stack.catalog.list()) == 2


class TestCaptureFailures:

    @pytest.mark.integration
    def test_unavailable_source_writes_nothing(self, stack, sqlite_store, deployment):
        from common.exceptions import ServiceUnavailable

        sqlite_store.available = False

        with pytest.raises(ServiceUnavailable) as exc:
            stack.capture.capture("manual")

        assert exc.value.details["source"] == "postgres"
        assert stack.catalog.list() == []
        assert not (deployment.backup_dir / ".staging").exists()

    @pytest.mark.integration
    def test_disk_full(self, stack, deployment):
        from common.exceptions import DiskFull

        deployment.min_free_bytes = 10 ** 18

        with pytest.raises(DiskFull):
            stack.capture.capture("manual")
        assert stack.catalog.list() == []

    @pytest.mark.integration
    def test_stalled_kv_save_is_partial(self, stack, fake_kv, fake_clock, deployment):
        fake_kv.stalled = True
        kv_source = next(s for s in stack.sources if s.name == "redis")
        kv_source.poll_options = {"clock": fake_clock, "sleep": fake_clock.sleep}

        bundle = stack.capture.capture("manual")

        assert not bundle.is_complete
        assert "SNAPSHOT_TIMEOUT" in bundle.failures["redis"]
        assert bundle.path == deployment.backup_dir / ".partial" / bundle.id
        assert stack.catalog.list() == []
        # Healthy sources were still captured before the outcome was decided
        assert (bundle.path / "postgres_dump.sql.gz").exists()

    @pytest.mark.integration
    def test_dump_failure_is_partial(self, stack, sqlite_store):
        from common.exceptions import DumpFailed

        sqlite_store.dump_error = DumpFailed("server closed the connection")

        bundle = stack.capture.capture("manual")

        assert not bundle.is_complete
        assert "server closed the connection" in bundle.failures["postgres"]
        metadata = json.loads((bundle.path / "metadata.json").read_text())
        assert metadata["status"] == "partial"
        assert stack.catalog.list() == []

    @pytest.mark.integration
    def test_cancelled_capture_is_quarantined(self, stack, deployment):
        from common.exceptions import OperationCancelled
        from utils.polling import CancellationToken

        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            stack.capture.capture("manual", cancel=token)

        assert stack.catalog.list() == []
        assert len(list((deployment.backup_dir / ".partial").iterdir())) == 1


class TestSourceFilter:

    @pytest.mark.integration
    def test_filter_by_name(self, stack):
        bundle = stack.capture.capture("db", source_filter=["postgres"])

        assert bundle.is_complete
        assert [a.source for a in bundle.artifacts] == ["postgres"]
        assert not (bundle.path / "n8n_data.tar.gz").exists()

    @pytest.mark.integration
    def test_filter_by_kind(self, stack):
        bundle = stack.capture.capture("cfg", source_filter=["config_copy"])

        assert [a.kind.value for a in bundle.artifacts] == ["config_copy"]

    @pytest.mark.unit
    def test_unknown_filter(self, stack):
        from common.exceptions import CaptureError

        with pytest.raises(CaptureError) as exc:
            stack.capture.capture("x", source_filter=["mysql"])
        assert exc.value.code == "NO_SOURCES"

    @pytest.mark.unit
    def test_config_with_nothing_to_copy(self, tmp_path):
        from common.exceptions import CaptureError
        from snapshots.sources import ConfigSource
        from utils.polling import CancellationToken

        source = ConfigSource("config", tmp_path, [".env", "nginx"])
        staging = tmp_path / "staging"
        staging.mkdir()

        with pytest.raises(CaptureError) as exc:
            source.capture(staging, CancellationToken())
        assert exc.value.code == "NOTHING_TO_CAPTURE"
