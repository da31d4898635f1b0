"""Redis client configuration."""

import platform
import socket
from typing import Optional

import redis.asyncio as redis

from subsync.core.config import settings
from subsync.core.logging import logger


class RedisClient:
    """Redis client wrapper with connection pooling."""

    def __init__(self):
        """Initialize the Redis client lazily."""
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        """Get or create the Redis client."""
        if self._client is None:
            self._client = self._create_client(max_connections=50)
        return self._client

    def _get_socket_keepalive_options(self) -> dict:
        """Get socket keepalive options based on the OS.

        Returns empty dict for macOS to avoid socket option errors.
        """
        if platform.system() == "Darwin":
            return {}

        if hasattr(socket, "TCP_KEEPIDLE"):
            return {
                socket.TCP_KEEPIDLE: 60,
                socket.TCP_KEEPINTVL: 10,
                socket.TCP_KEEPCNT: 6,
            }
        return {}

    def _create_client(self, max_connections: int = 50) -> redis.Redis:
        """Create a Redis client with specified connection pool size.

        Socket timeouts are kept short: the cache is an optimisation, and a slow
        Redis must degrade to gateway reads rather than stall requests.
        """
        pool = redis.ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            decode_responses=True,
            max_connections=max_connections,
            retry_on_timeout=True,
            socket_keepalive=True,
            socket_keepalive_options=self._get_socket_keepalive_options(),
            socket_connect_timeout=2,
            socket_timeout=2,
        )

        return redis.Redis(connection_pool=pool)

    async def test_connection(self) -> bool:
        """Test Redis connection.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            await self.client.ping()
            logger.info("Redis connection successful")
            return True
        except (redis.RedisError, OSError) as e:
            logger.error(f"Redis connection failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection gracefully."""
        if self._client:
            await self._client.aclose()
            self._client = None


# Create a global instance
redis_client = RedisClient()
