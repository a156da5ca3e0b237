import fnmatch
import logging
from typing import Any, Dict, List, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async string key/value interface used by the credential and action stores."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> bool: ...
    async def delete(self, key: str) -> bool: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...


class RedisCrudService:
    """Async CRUD operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(self, key: str, value: str) -> bool:
        """Set key to value. Returns True on success."""
        if self._client is None:
            return False
        try:
            await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if key was deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False

    async def scan_keys(self, pattern: str) -> List[str]:
        """Return all keys matching a glob pattern (SCAN, not KEYS)."""
        if self._client is None:
            return []
        try:
            return [str(k) async for k in self._client.scan_iter(match=pattern)]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis scan %s failed: %s", pattern, e)
            return []


class InMemoryKeyValueStore:
    """Process-local store with the RedisCrudService interface. Lost on restart."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    async def scan_keys(self, pattern: str) -> List[str]:
        return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())


def get_key_value_store() -> KeyValueStore:
    """Return Redis when configured, otherwise an in-memory store."""
    redis_crud = get_redis_crud_service()
    if redis_crud is not None:
        return redis_crud
    logger.warning("REDIS_URL not set; account credentials will not survive a restart")
    return InMemoryKeyValueStore()
