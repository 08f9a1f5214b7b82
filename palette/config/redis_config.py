#!/usr/bin/env python3
"""
Redis Configuration Module
Handles the optional Redis connection backing the rate limiter.
"""

import logging
import os
import threading

import redis
from redis.connection import ConnectionPool

from palette.config.config import Config

logger = logging.getLogger(__name__)


class RedisConfig:
    """Redis configuration and connection management"""

    def __init__(self):
        self.enabled = Config.REDIS_ENABLED or bool(Config.REDIS_URL)
        self.redis_url = Config.REDIS_URL or "redis://localhost:6379/0"
        self.redis_max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", "50"))
        # Fail fast; the rate limiter falls back to local memory
        self.redis_socket_timeout = int(os.environ.get("REDIS_SOCKET_TIMEOUT", "2"))
        self.redis_socket_connect_timeout = int(os.environ.get("REDIS_SOCKET_CONNECT_TIMEOUT", "2"))

        self._client: redis.Redis | None = None
        self._pool: ConnectionPool | None = None

    def get_connection_pool(self) -> ConnectionPool:
        """Get Redis connection pool"""
        if self._pool is None:
            connection_kwargs = {
                "max_connections": self.redis_max_connections,
                "socket_timeout": self.redis_socket_timeout,
                "socket_connect_timeout": self.redis_socket_connect_timeout,
                "decode_responses": True,
            }
            if self.redis_url.startswith("rediss://"):
                connection_kwargs["ssl_cert_reqs"] = None

            self._pool = ConnectionPool.from_url(self.redis_url, **connection_kwargs)
        return self._pool

    def get_client(self) -> redis.Redis | None:
        """Get Redis client instance, or None when Redis is disabled or unreachable"""
        if not self.enabled:
            return None
        if self._client is None:
            try:
                client = redis.Redis(connection_pool=self.get_connection_pool())
                client.ping()
                self._client = client
                logger.info("Redis connection established successfully")
            except Exception as e:
                logger.debug(f"Redis unavailable: {e}. Using local memory fallback.")
                self._client = None
        return self._client


_redis_config = None
_redis_config_lock = threading.Lock()


def get_redis_config() -> RedisConfig:
    """Get global Redis configuration instance (thread-safe singleton)."""
    global _redis_config
    if _redis_config is None:
        with _redis_config_lock:
            if _redis_config is None:
                _redis_config = RedisConfig()
    return _redis_config


def get_redis_client() -> redis.Redis | None:
    """Get Redis client instance"""
    return get_redis_config().get_client()
