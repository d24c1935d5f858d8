"""
Pytest configuration and shared fixtures for r8-lifecycle tests.

Provides fakes for the container runtime, the relational store (backed by
sqlite) and the KV store, plus a throwaway deployment on disk.
"""

import os
import sqlite3
import pytest
from unittest.mock import MagicMock, patch
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


SERVICES = ["n8n", "postgres", "redis"]


# ============ Fake Collaborators ============

class FakeRuntime:
    """In-memory stand-in for ComposeRuntime."""

    def __init__(self, services=None):
        self.services = list(services or SERVICES)
        self.images = {s: f"sha256:{s}-v1" for s in self.services}
        self.latest = dict(self.images)
        self.health_map = {s: "healthy" for s in self.services}
        self.health_fn = None
        self.calls = []
        self.fail = {}
        self.available = True

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise self.fail[name]

    def stop(self, services, timeout=30):
        self._record("stop", tuple(services), timeout)

    def start(self, services, recreate=False):
        self._record("start", tuple(services), recreate)

    def current_version(self, service):
        return self.images.get(service)

    def pull_latest(self, service):
        self._record("pull", service)
        self.images[service] = self.latest[service]
        return self.images[service]

    def restore_version(self, service, version):
        self._record("retag", service, version)
        self.images[service] = version

    def versions(self):
        return dict(self.images)

    def health(self, service):
        if self.health_fn is not None:
            return self.health_fn(service)
        return self.health_map.get(service, "missing")

    def is_available(self):
        return self.available

    def call_names(self):
        return [c[0] for c in self.calls]


class SqliteStore:
    """Relational store backed by a sqlite file; dumps are replayable SQL."""

    def __init__(self, path: Path):
        self.path = path
        self.available = True
        self.dump_error = None

    def ping(self):
        return self.available

    def dump(self, sink):
        if self.dump_error is not None:
            raise self.dump_error
        conn = sqlite3.connect(self.path)
        try:
            tables = [
                row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
            ]
            lines = [f'DROP TABLE IF EXISTS "{t}";' for t in tables]
            lines.extend(conn.iterdump())
        finally:
            conn.close()
        data = ("\n".join(lines) + "\n").encode("utf-8")
        sink.write(data)
        return len(data)

    def load(self, source):
        script = source.read().decode("utf-8")
        conn = sqlite3.connect(self.path)
        try:
            conn.executescript(script)
        finally:
            conn.close()

    def rows(self):
        conn = sqlite3.connect(self.path)
        try:
            return conn.execute("SELECT id, name FROM workflows ORDER BY id").fetchall()
        finally:
            conn.close()


class FakeKv:
    """KV store whose background save finishes immediately (unless stalled)."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.available = True
        self.stalled = False
        self.marker = 1700000000
        self.saves = 0

    def ping(self):
        return self.available

    def trigger_async_save(self):
        self.saves += 1
        if not self.stalled:
            (self.data_dir / "dump.rdb").write_bytes(b"REDIS0011" + bytes([self.saves]))
            self.marker += 1

    def last_save_marker(self):
        return self.marker


# ============ Deployment Fixtures ============

@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A compose project with n8n data, redis data and config files."""
    project = tmp_path / "project"
    n8n = project / "data" / "n8n"
    (n8n / "nodes").mkdir(parents=True)
    (n8n / "config").write_text('{"encryptionKey": "secret"}\n')
    (n8n / "database.sqlite").write_bytes(os.urandom(6 * 1024))
    (n8n / "nodes" / "package.json").write_bytes(b'{"name": "custom"}' + b" " * 4000)

    redis = project / "data" / "redis"
    redis.mkdir(parents=True)
    (redis / "dump.rdb").write_bytes(b"REDIS0011-initial")

    (project / ".env").write_text("POSTGRES_USER=n8n\nPOSTGRES_DB=n8n\n")
    (project / "docker-compose.yml").write_text("services:\n  n8n:\n    image: n8nio/n8n\n")
    (project / "nginx").mkdir()
    (project / "nginx" / "nginx.conf").write_text("server { listen 80; }\n")
    return project


@pytest.fixture
def deployment(project_dir: Path):
    """DeploymentConfig pointing at the temporary project."""
    from common.config import DeploymentConfig

    return DeploymentConfig(
        project_dir=project_dir,
        compose_file=project_dir / "docker-compose.yml",
        backup_dir=project_dir / "backups",
        state_dir=project_dir / ".lifecycle",
        n8n_data_dir=project_dir / "data" / "n8n",
        redis_data_dir=project_dir / "data" / "redis",
        health_timeout=2.0,
        health_poll_interval=0.01,
        stop_timeout=5,
        snapshot_timeout=1.0,
        min_free_bytes=0,
    )


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def sqlite_store(project_dir: Path):
    """sqlite database with two workflow rows."""
    path = project_dir / "postgres.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE workflows (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
    conn.executemany(
        "INSERT INTO workflows (id, name) VALUES (?, ?)",
        [(1, "daily report"), (2, "slack alerts")],
    )
    conn.commit()
    conn.close()
    return SqliteStore(path)


@pytest.fixture
def fake_kv(deployment):
    return FakeKv(deployment.redis_data_dir)


@pytest.fixture
def stack(deployment, fake_runtime, sqlite_store, fake_kv):
    """All lifecycle components wired against the fakes."""
    from snapshots.capture import SnapshotCapture
    from snapshots.catalog import SnapshotCatalog
    from snapshots.restore import RestoreExecutor
    from snapshots.sources import default_sources
    from updater.cli import Components
    from updater.health import HealthProbe
    from updater.lock import ExecutionLock
    from updater.notify import NotificationSink
    from updater.orchestrator import UpdateOrchestrator

    sources = default_sources(deployment, sqlite_store, fake_kv)
    probe = HealthProbe(fake_runtime)
    catalog = SnapshotCatalog(deployment.backup_dir, sources)
    capture = SnapshotCapture(deployment, fake_runtime, sources)
    restore = RestoreExecutor(deployment, catalog, fake_runtime, probe, sources)
    sink = NotificationSink([MagicMock(name="channel")])
    lock = ExecutionLock(deployment.lock_file)
    orchestrator = UpdateOrchestrator(
        deployment, fake_runtime, capture, catalog, restore, probe, sink, lock
    )
    return Components(
        config=deployment,
        runtime=fake_runtime,
        sources=sources,
        capture=capture,
        catalog=catalog,
        probe=probe,
        restore=restore,
        sink=sink,
        lock=lock,
        orchestrator=orchestrator,
    )


# ============ Time Fixtures ============

class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============ Subprocess Fixtures ============

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests."""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield mock_run


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that drive several components against fakes"
    )

