"""
Resource Cleanup Utilities

Guarantees release of process-wide resources (the execution lock) on every
exit path: normal return, exceptions, and termination signals.
"""

from __future__ import annotations

import atexit
import signal
import threading
from typing import Callable, List, Optional
import logging

logger = logging.getLogger(__name__)


class CleanupRegistry:
    """
    Registry for cleanup callbacks to ensure resources are released.

    Example:
        registry = CleanupRegistry()
        registry.register(lock.release)

        # On shutdown
        registry.cleanup_all()
    """

    def __init__(self):
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def register(self, callback: Callable[[], None]):
        """Register a cleanup callback."""
        with self._lock:
            self._callbacks.append(callback)

    def unregister(self, callback: Callable[[], None]):
        """Unregister a cleanup callback."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cleanup_all(self):
        """Execute all cleanup callbacks (in reverse order)."""
        with self._lock:
            callbacks = self._callbacks.copy()
            self._callbacks.clear()

        for callback in reversed(callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cleanup callback failed: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)


_global_cleanup = CleanupRegistry()
atexit.register(_global_cleanup.cleanup_all)


def register_cleanup(callback: Callable[[], None]):
    """Register a global cleanup callback, run at interpreter exit."""
    _global_cleanup.register(callback)


def unregister_cleanup(callback: Callable[[], None]):
    """Remove a global cleanup callback."""
    _global_cleanup.unregister(callback)


def cleanup_all():
    """Execute all global cleanup callbacks."""
    _global_cleanup.cleanup_all()


def _raise_system_exit(signum, frame):
    logger.warning(f"Received signal {signum}, shutting down")
    raise SystemExit(128 + signum)


def install_termination_handlers(
    signals: Optional[List[int]] = None,
) -> None:
    """
    Turn termination signals into SystemExit.

    SystemExit unwinds the stack, so every ``with`` block and ``finally``
    clause runs and the execution lock is released. SIGINT already raises
    KeyboardInterrupt and is left alone.
    """
    if signals is None:
        signals = [signal.SIGTERM]
        if hasattr(signal, "SIGHUP"):
            signals.append(signal.SIGHUP)

    if threading.current_thread() is not threading.main_thread():
        logger.debug("Not on main thread, signal handlers not installed")
        return

    for signum in signals:
        signal.signal(signum, _raise_system_exit)
