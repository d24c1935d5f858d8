"""
PostgreSQL Store

Logical dump and load of the workflow database, run inside the database
container through ``docker compose exec``.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from typing import BinaryIO, List

from common.config import DeploymentConfig
from common.exceptions import CommandError, DependencyError, DumpFailed

logger = logging.getLogger(__name__)

# Dump options: restorable over an existing schema, no role/ACL statements
DUMP_OPTIONS = ["--clean", "--if-exists", "--no-owner", "--no-privileges"]

CHUNK_SIZE = 1024 * 1024


class PostgresStore:
    """Relational store reached through the compose runtime."""

    def __init__(self, runtime, config: DeploymentConfig, timeout: float = 3600):
        self.runtime = runtime
        self.service = config.postgres_service
        self.user = config.postgres_user
        self.database = config.postgres_db
        self.timeout = timeout

    def _exec(self, *args: str) -> List[str]:
        return self.runtime.exec_args(self.service, *args)

    def ping(self) -> bool:
        """Whether the server accepts connections."""
        try:
            result = subprocess.run(
                self._exec("pg_isready", "-U", self.user, "-d", self.database),
                capture_output=True,
                text=True,
                timeout=15,
            )
        except FileNotFoundError as e:
            raise DependencyError("docker") from e
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    def dump(self, sink: BinaryIO) -> int:
        """
        Stream a logical dump into ``sink``.

        Returns:
            Number of bytes written

        Raises:
            DumpFailed: If pg_dump exits non-zero or times out
        """
        cmd = self._exec("pg_dump", "-U", self.user, "-d", self.database, *DUMP_OPTIONS)
        logger.debug(f"Dumping database {self.database}")

        with tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=err)
            except FileNotFoundError as e:
                raise DependencyError("docker") from e

            written = 0
            try:
                while True:
                    chunk = proc.stdout.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    sink.write(chunk)
                    written += len(chunk)
                proc.stdout.close()
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                proc.wait()
                raise DumpFailed(f"pg_dump timed out after {self.timeout}s", cause=e)
            except BaseException:
                proc.kill()
                proc.wait()
                raise

            if returncode != 0:
                err.seek(0)
                stderr = err.read().decode("utf-8", errors="replace").strip()
                raise DumpFailed(stderr or f"pg_dump exited with {returncode}")

        if written == 0:
            raise DumpFailed("pg_dump produced no output")
        return written

    def load(self, source: BinaryIO) -> None:
        """
        Replay a logical dump from ``source``.

        Raises:
            CommandError: If psql stops on an error
        """
        cmd = self._exec("psql", "-v", "ON_ERROR_STOP=1", "-q", "-U", self.user, "-d", self.database)
        logger.debug(f"Loading dump into {self.database}")

        with tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(
                    cmd, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=err
                )
            except FileNotFoundError as e:
                raise DependencyError("docker") from e

            try:
                try:
                    shutil.copyfileobj(source, proc.stdin, CHUNK_SIZE)
                finally:
                    proc.stdin.close()
                returncode = proc.wait(timeout=self.timeout)
            except BrokenPipeError:
                # psql quit early, the return code carries the reason
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                proc.wait()
                raise CommandError(cmd, -1, f"psql timed out after {self.timeout}s") from e

            if returncode != 0:
                err.seek(0)
                raise CommandError(cmd, returncode, err.read().decode("utf-8", errors="replace").strip())
