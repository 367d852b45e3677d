"""
Redis manager for handling Redis connections and related utilities.

Redis backs IP rate limiting and the access token blacklist. The connection is created lazily
on first use so that importing the application never needs a live Redis.

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
"""

import json
from typing import Any, Optional

from fastapi import HTTPException, status
import redis.asyncio as redis_async
from redis.exceptions import RedisError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")

REDIS_UNAVAILABLE_MSG: str = "Rate limiting service unavailable. Please try again later."


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url: str = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Raises:
            HTTPException: 503 if Redis is unavailable.
        """
        if self._redis is None:
            try:
                self.logger.info("Connecting to Redis at %s", self.redis_url)
                client = redis_async.from_url(self.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
                self.logger.info("Connected to Redis at %s", self.redis_url)
            except (RedisError, OSError) as conn_exc:
                self.logger.error("Failed to create async Redis connection: %s", conn_exc, exc_info=True)
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail=REDIS_UNAVAILABLE_MSG,
                ) from conn_exc
        return self._redis

    async def health_check(self) -> bool:
        try:
            redis_conn = await self.get_redis()
            return bool(await redis_conn.ping())
        except (HTTPException, RedisError, OSError) as e:
            self.logger.warning("Redis health check failed: %s", e)
            return False

    async def set_with_expiry(self, key: str, value: Any, expiry: int) -> None:
        """
        Set a key-value pair with expiration time.

        Args:
            key: The Redis key
            value: The value to store (JSON serialized if not a string)
            expiry: Expiration time in seconds
        """
        redis_client = await self.get_redis()
        serialized_value = value if isinstance(value, str) else json.dumps(value, default=str)
        await redis_client.setex(key, max(1, int(expiry)), serialized_value)
        self.logger.debug("Set key %s with expiry %d seconds", key, expiry)

    async def get(self, key: str) -> Any:
        """Get a value by key, JSON-decoding it when possible."""
        redis_client = await self.get_redis()
        value = await redis_client.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def exists(self, key: str) -> bool:
        redis_client = await self.get_redis()
        return bool(await redis_client.exists(key))

    async def delete(self, key: str) -> None:
        redis_client = await self.get_redis()
        await redis_client.delete(key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


redis_manager = RedisManager()
