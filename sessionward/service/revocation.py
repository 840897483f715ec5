from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timedelta
from typing import Callable, Optional

from sessionward.logging import get_logger
from sessionward.service.errors import InvalidToken
from sessionward.service.tokens import TokenCodec
from sessionward.storage.errors import StoreUnavailable
from sessionward.storage.models import utcnow
from sessionward.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

KEY_PREFIX = "jwt:bl:"


def sha256url(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class RevocationStore:
    """Access-token blacklist and per-subject revocation fences.

    Every operation fails open: a TTL-store outage is logged and treated as
    "not revoked" so that authentication keeps working.
    """

    def __init__(
        self,
        cache: CacheBackend,
        codec: TokenCodec,
        *,
        issuer: Optional[str] = None,
        skew_ms: int = 5000,
        min_ttl_ms: int = 100,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.codec = codec
        self.issuer = issuer
        self.skew_ms = skew_ms
        self.min_ttl_ms = min_ttl_ms
        self._now = now_fn or utcnow

    def _issuer_prefix(self, issuer: Optional[str]) -> str:
        issuer = issuer or self.issuer
        return f"{KEY_PREFIX}iss:{sha256url(issuer)}:" if issuer else KEY_PREFIX

    def jti_key(self, jti: str, issuer: Optional[str] = None) -> str:
        return f"{self._issuer_prefix(issuer)}jti:{jti}"

    def hash_key(self, token: str, issuer: Optional[str] = None) -> str:
        return f"{self._issuer_prefix(issuer)}sha:{sha256url(token)}"

    def fence_key(self, issuer: Optional[str], subject: str) -> str:
        return f"{self._issuer_prefix(issuer)}sub:{sha256url(subject)}:revoked-after"

    def blacklist_ttl_ms(self, expires_at_epoch: int) -> int:
        now_ms = int(self._now().timestamp() * 1000)
        remaining = expires_at_epoch * 1000 - now_ms - self.skew_ms
        return max(remaining, self.min_ttl_ms)

    def within_expiry_margin(self, expires_at_epoch: int) -> bool:
        """True once a blacklist entry written now would lapse before ``exp``."""
        now_ms = int(self._now().timestamp() * 1000)
        return expires_at_epoch * 1000 - now_ms <= self.skew_ms

    async def blacklist(self, token: str) -> None:
        try:
            claims = self.codec.parse_and_verify(token, verify_time=False)
        except InvalidToken:
            logger.info("blacklist_skipped_unparseable_token")
            return
        if claims.token_id:
            key = self.jti_key(claims.token_id, claims.issuer)
        else:
            key = self.hash_key(token, claims.issuer)
        ttl_ms = self.blacklist_ttl_ms(claims.expires_at)
        try:
            await self.cache.set(key, "1", timedelta(milliseconds=ttl_ms))
        except StoreUnavailable as exc:
            logger.warning("blacklist_write_failed", error=str(exc))
            return
        logger.info("access_token_blacklisted", ttl_ms=ttl_ms, by_jti=bool(claims.token_id))

    async def is_blacklisted(self, token: str) -> bool:
        try:
            claims = self.codec.parse_and_verify(token, verify_time=False)
        except InvalidToken:
            return False
        try:
            if claims.token_id and await self.cache.exists(
                self.jti_key(claims.token_id, claims.issuer)
            ):
                return True
            return await self.cache.exists(self.hash_key(token, claims.issuer))
        except StoreUnavailable as exc:
            logger.warning("blacklist_lookup_failed", error=str(exc))
            return False

    async def set_revocation_fence(
        self,
        issuer: Optional[str],
        subject: str,
        revoked_after_epoch: int,
        ttl: timedelta,
    ) -> None:
        try:
            await self.cache.set(
                self.fence_key(issuer, subject), str(int(revoked_after_epoch)), ttl
            )
        except StoreUnavailable as exc:
            logger.warning("revocation_fence_write_failed", error=str(exc))
            return
        logger.info("revocation_fence_set", revoked_after=int(revoked_after_epoch))

    async def is_before_fence(
        self, issuer: Optional[str], subject: str, issued_at_epoch: int
    ) -> bool:
        try:
            raw = await self.cache.get(self.fence_key(issuer, subject))
        except StoreUnavailable as exc:
            logger.warning("revocation_fence_lookup_failed", error=str(exc))
            return False
        if raw is None:
            return False
        try:
            fence = int(raw)
        except (TypeError, ValueError):
            logger.warning("revocation_fence_corrupt", value=raw)
            return False
        return issued_at_epoch <= fence
