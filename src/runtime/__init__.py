"""
r8-lifecycle External Collaborators

Container runtime, relational store and KV store adapters.
"""

from .compose import ComposeRuntime, container_health, parse_ps_output
from .postgres import PostgresStore
from .kv import RedisStore

__all__ = [
    "ComposeRuntime",
    "container_health",
    "parse_ps_output",
    "PostgresStore",
    "RedisStore",
]
