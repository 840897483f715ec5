from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from sessionward.logging import get_logger
from sessionward.service.otp import normalize_email
from sessionward.storage.models import User, utcnow

logger = get_logger(__name__)


class AccountLookup(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


class AccountCache:
    """Short-lived read-through cache in front of account lookups by email.

    Misses are never cached, so a user created a moment ago is visible on the
    next call. Anything that changes account state must call ``invalidate``.
    """

    def __init__(
        self,
        store: AccountLookup,
        *,
        ttl_seconds: int = 30,
        max_entries: int = 10_000,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max(1, max_entries)
        self._now = now_fn or utcnow
        self._entries: "OrderedDict[str, Tuple[User, datetime]]" = OrderedDict()
        self._lock = threading.Lock()

    def _lookup_cached(self, key: str) -> Optional[User]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            user, expires_at = entry
            if expires_at <= self._now():
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return user

    def _remember(self, key: str, user: User) -> None:
        with self._lock:
            self._entries[key] = (user, self._now() + self.ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_by_email(self, email: str) -> Optional[User]:
        key = normalize_email(email)
        if not key:
            return None
        if self.ttl.total_seconds() > 0:
            try:
                cached = self._lookup_cached(key)
            except Exception as exc:
                logger.warning("account_cache_read_failed", error=str(exc))
                cached = None
            if cached is not None:
                return cached

        user = self.store.get_user_by_email(key)
        if user is not None and self.ttl.total_seconds() > 0:
            try:
                self._remember(key, user)
            except Exception as exc:
                logger.warning("account_cache_write_failed", error=str(exc))
        return user

    def invalidate(self, email: str) -> None:
        key = normalize_email(email)
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
