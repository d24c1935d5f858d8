"""
Execution Lock

Single-flight guard for every mutating operation (capture during an update,
restore, apply). The lock is one marker file holding the owner's pid, so a
crashed owner can be detected and its lock reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from common.exceptions import LockContention
from common.resources import register_cleanup, unregister_cleanup
from utils.atomic_write import create_exclusive

logger = logging.getLogger(__name__)

RECLAIM_ATTEMPTS = 3


@dataclass
class LockOwner:
    """Contents of the lock marker."""
    pid: int
    created_at: str
    hostname: str

    @classmethod
    def current(cls) -> "LockOwner":
        return cls(
            pid=os.getpid(),
            created_at=datetime.now().isoformat(),
            hostname=socket.gethostname(),
        )

    @classmethod
    def from_file(cls, path: Path) -> Optional["LockOwner"]:
        """Read a marker; None if it is missing or unreadable."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(
                pid=int(data["pid"]),
                created_at=str(data["created_at"]),
                hostname=str(data.get("hostname", "")),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class LockHandle:
    """Proof of lock ownership; releasing it removes the marker."""

    def __init__(self, lock: "ExecutionLock", owner: LockOwner):
        self.lock = lock
        self.owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        unregister_cleanup(self.release)
        self.lock._remove_if_owned(self.owner)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class ExecutionLock:
    """
    Exclusive, crash-safe process lock.

    Example:
        lock = ExecutionLock(config.lock_file)
        with lock.acquire():
            orchestrator.run()
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_owner(self) -> Optional[LockOwner]:
        """Current holder, or None if the lock is free or unreadable."""
        return LockOwner.from_file(self.path)

    def is_held(self) -> bool:
        return self.path.exists()

    def acquire(self) -> LockHandle:
        """
        Take the lock.

        Returns:
            Handle whose release (or context exit) frees the lock

        Raises:
            LockContention: If a live process holds the lock
        """
        for _ in range(RECLAIM_ATTEMPTS):
            owner = LockOwner.current()
            content = json.dumps(asdict(owner))
            if create_exclusive(self.path, content):
                handle = LockHandle(self, owner)
                register_cleanup(handle.release)
                logger.debug(f"Acquired lock {self.path} (pid {owner.pid})")
                return handle

            holder = self.read_owner()
            if holder is None and not self.path.exists():
                # Released between our attempt and the read
                continue
            if holder is not None and not self._is_stale(holder):
                raise LockContention(holder.pid, str(self.path))

            if holder is None:
                logger.warning(f"Lock file {self.path} is unreadable, treating as stale")
            else:
                logger.warning(f"Reclaiming stale lock held by dead pid {holder.pid}")

            if not self._reclaim(holder):
                current = self.read_owner()
                raise LockContention(current.pid if current else None, str(self.path))

        current = self.read_owner()
        raise LockContention(current.pid if current else None, str(self.path))

    def _is_stale(self, holder: LockOwner) -> bool:
        if holder.hostname and holder.hostname != socket.gethostname():
            # Cannot probe a pid on another host
            return False
        if holder.pid == os.getpid():
            return False
        return not pid_alive(holder.pid)

    def _reclaim(self, stale: Optional[LockOwner]) -> bool:
        """
        Move a stale marker out of the way.

        The marker is renamed to a unique tombstone first, then checked again,
        so two processes reclaiming at once cannot both remove a fresh lock.
        """
        tombstone = self.path.with_name(f".{self.path.name}.stale.{uuid.uuid4().hex[:12]}")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            # Someone else reclaimed it first
            return True

        moved = LockOwner.from_file(tombstone)
        same = (moved is None and stale is None) or (
            moved is not None and stale is not None
            and moved.pid == stale.pid and moved.created_at == stale.created_at
        )
        if not same:
            # A live owner replaced the stale marker in between; put it back
            try:
                os.link(tombstone, self.path)
            except FileExistsError:
                pass
        try:
            tombstone.unlink()
        except FileNotFoundError:
            pass
        return same

    def _remove_if_owned(self, owner: LockOwner) -> None:
        current = self.read_owner()
        if current is None or current.pid != owner.pid or current.created_at != owner.created_at:
            logger.warning(f"Lock {self.path} is not ours anymore, leaving it in place")
            return
        try:
            self.path.unlink()
            logger.debug(f"Released lock {self.path}")
        except FileNotFoundError:
            pass

    def __enter__(self) -> LockHandle:
        self._handle = self.acquire()
        return self._handle

    def __exit__(self, exc_type, exc, tb):
        self._handle.release()
        return False
