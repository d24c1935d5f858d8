"""
Redis Store

Background-save control for the queue/cache store.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import redis

from common.config import DeploymentConfig

logger = logging.getLogger(__name__)


class RedisStore:
    """KV store reached with redis-py."""

    def __init__(self, config: DeploymentConfig, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            password=config.redis_password or None,
            socket_timeout=5,
            socket_connect_timeout=5,
        )

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    def trigger_async_save(self) -> None:
        """Start a background save; an already running one is fine."""
        try:
            self.client.bgsave()
        except redis.ResponseError as e:
            if "in progress" in str(e).lower():
                logger.debug("Background save already in progress")
                return
            raise

    def last_save_marker(self) -> datetime:
        """Time of the last successful save to disk."""
        return self.client.lastsave()
