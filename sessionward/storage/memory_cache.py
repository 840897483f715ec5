from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sessionward.storage.models import utcnow


class MemoryCache:
    """In-process stand-in for ``RedisCache``.

    Only wired when TEST_MODE or ALLOW_REDIS_FALLBACK_DEV is set; state is
    per-process and lost on restart. Expiry is evaluated lazily against
    ``now_fn`` so tests can drive it with a frozen clock.
    """

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None) -> None:
        self._now = now_fn or utcnow
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._entries.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = (str(value), self._now() + ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def incr_with_ttl(self, key: str, ttl: timedelta) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._entries[key] = ("1", self._now() + ttl)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    async def ttl_ms(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            remaining = entry[1] - self._now()
            return max(0, int(remaining.total_seconds() * 1000))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
