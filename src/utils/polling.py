"""
Timed polling with cancellation.

One reusable primitive - ticker, deadline, cancellation token - shared by
health verification and the KV background-save wait.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar

from common.exceptions import OperationCancelled

T = TypeVar('T')


class PollTimeout(Exception):
    """Deadline elapsed before the probe produced a result."""

    def __init__(self, timeout: float, last_value=None):
        super().__init__(f"No result within {timeout:g}s")
        self.timeout = timeout
        self.last_value = last_value


class CancellationToken:
    """
    Thread-safe cancellation signal.

    Example:
        token = CancellationToken()
        threading.Timer(60, token.cancel).start()
        poll_until(probe, timeout=300, interval=5, cancel=token)
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled."""
        return self._event.wait(max(seconds, 0))

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(operation)


def poll_until(
    probe: Callable[[], Optional[T]],
    timeout: float,
    interval: float,
    cancel: Optional[CancellationToken] = None,
    operation: str = "poll",
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], object]] = None,
    on_tick: Optional[Callable[[Optional[T]], None]] = None,
) -> T:
    """
    Call ``probe`` until it returns a non-None value.

    The probe runs once immediately, then once per ``interval`` until the
    deadline. Cancellation is checked before every probe and interrupts the
    sleep between probes.

    Args:
        probe: Returns a result to stop polling, or None to keep waiting
        timeout: Seconds until the deadline
        interval: Seconds between probes
        cancel: Optional cancellation token
        operation: Name used in the cancellation error
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (default: the token's interruptible wait)
        on_tick: Called with each probe result

    Returns:
        The first non-None probe result

    Raises:
        PollTimeout: If the deadline elapses first
        OperationCancelled: If the token is cancelled
    """
    cancel = cancel or CancellationToken()
    sleep = sleep or cancel.wait
    deadline = clock() + timeout
    last = None

    while True:
        cancel.raise_if_cancelled(operation)

        last = probe()
        if on_tick:
            on_tick(last)
        if last is not None:
            return last

        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeout(timeout)

        sleep(min(interval, remaining))
