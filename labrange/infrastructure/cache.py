"""
LabRange - Redis Infrastructure
Redis client with connection pooling and circuit breaker
"""

import json
from typing import Any, Optional

import structlog
from pybreaker import CircuitBreaker, CircuitBreakerError
from redis.asyncio import ConnectionPool, Redis

from labrange.core.config import Settings

logger = structlog.get_logger(__name__)


# Circuit breaker for Redis operations
redis_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=30,
    exclude=[ConnectionError],
)


class CacheManager:
    """
    Redis manager with circuit breaker pattern.

    Used for fan-out of session events; a Redis outage never blocks the
    orchestrator.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize Redis connection pool."""
        logger.info(
            "Connecting to Redis",
            host=str(self._settings.redis_url).split("@")[-1],
        )

        self._pool = ConnectionPool.from_url(
            str(self._settings.redis_url),
            password=self._settings.redis_password or None,
            max_connections=self._settings.redis_pool_size,
            decode_responses=True,
        )

        self._client = Redis(connection_pool=self._pool)

        await self._client.ping()

        logger.info("Redis connection established")

    async def disconnect(self) -> None:
        """Close Redis connection pool."""
        if self._client:
            await self._client.aclose()
        if self._pool:
            await self._pool.disconnect()
        logger.info("Redis connection closed")

    @property
    def client(self) -> Redis:
        """Get Redis client."""
        if self._client is None:
            raise RuntimeError("Cache not connected")
        return self._client

    async def publish(self, channel: str, message: Any) -> bool:
        """
        Publish a JSON message on a channel.

        Args:
            channel: Pub/sub channel
            message: JSON-serialisable payload

        Returns:
            True if the message was handed to Redis
        """
        try:
            payload = json.dumps(message, default=str)
            # Failures raised inside the block count towards tripping the breaker
            with redis_breaker.calling():
                await self.client.publish(channel, payload)
            return True
        except CircuitBreakerError:
            logger.warning("Redis circuit breaker open", channel=channel)
            return False
        except (TypeError, ValueError) as e:
            logger.error("JSON serialization error", channel=channel, error=str(e))
            return False
        except Exception as e:
            logger.error("Redis publish error", channel=channel, error=str(e))
            return False

    async def health_check(self) -> dict:
        try:
            await self.client.ping()
            info = await self.client.info("memory")

            return {
                "status": "healthy",
                "used_memory": info.get("used_memory_human", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            }
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }
