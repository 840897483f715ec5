from __future__ import annotations

import functools
from datetime import timedelta
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessionward.logging import get_logger
from sessionward.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class CacheBackend(Protocol):
    """TTL key-value store used for the blacklist, fences and OTP state."""

    async def set(self, key: str, value: str, ttl: timedelta) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr_with_ttl(self, key: str, ttl: timedelta) -> int: ...

    async def ttl_ms(self, key: str) -> Optional[int]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def _ttl_to_ms(ttl: timedelta) -> int:
    # Redis rejects PX values below 1
    return max(1, int(ttl.total_seconds() * 1000))


def _pttl_result(value: int) -> Optional[int]:
    # -2: key missing, -1: key has no expiry
    return int(value) if value is not None and int(value) >= 0 else None


def _translate_errors(func):
    """Surface redis-py failures as ``StoreUnavailable``."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisError as exc:
            logger.warning(
                "redis_command_failed",
                command=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable("redis", str(exc)) from exc

    return wrapper


class RedisCache:
    """Thin async Redis wrapper implementing ``CacheBackend``."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and attach the window only on the first write so later increments
    # never extend it
    _INCR_WITH_TTL_SCRIPT = """
local n = redis.call('INCR', KEYS[1])
if n == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return n
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        await self.client.set(key, value, px=_ttl_to_ms(ttl))

    @_translate_errors
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_translate_errors
    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    @_translate_errors
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    @_translate_errors
    async def incr_with_ttl(self, key: str, ttl: timedelta) -> int:
        return int(await self._incr_with_ttl(keys=[key], args=[_ttl_to_ms(ttl)]))

    @_translate_errors
    async def ttl_ms(self, key: str) -> Optional[int]:
        return _pttl_result(await self.client.pttl(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests and scripts.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(
            RedisCache._INCR_WITH_TTL_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    @_translate_errors
    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        self.client.set(key, value, px=_ttl_to_ms(ttl))

    @_translate_errors
    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    @_translate_errors
    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    @_translate_errors
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    @_translate_errors
    async def incr_with_ttl(self, key: str, ttl: timedelta) -> int:
        return int(self._incr_with_ttl(keys=[key], args=[_ttl_to_ms(ttl)]))

    @_translate_errors
    async def ttl_ms(self, key: str) -> Optional[int]:
        return _pttl_result(self.client.pttl(key))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
