"""
r8-lifecycle Utility Modules

Atomic file operations and the shared timed-poll primitive.
"""

from .atomic_write import (
    atomic_write_text,
    atomic_write_json,
    create_exclusive,
    promote_directory,
    move_aside,
)
from .polling import CancellationToken, PollTimeout, poll_until

__all__ = [
    "atomic_write_text",
    "atomic_write_json",
    "create_exclusive",
    "promote_directory",
    "move_aside",
    "CancellationToken",
    "PollTimeout",
    "poll_until",
]
