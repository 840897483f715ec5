from __future__ import annotations

import asyncio
import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from sessionward.logging import get_logger
from sessionward.service.errors import (
    Cooldown,
    Expired,
    IncorrectCode,
    ResendQuotaExceeded,
    ResendTooSoon,
    TooManyAttempts,
    ValidationError,
)
from sessionward.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

CODE_MIN = 100_000
CODE_MAX = 999_999


class OtpNotifier(Protocol):
    def send_otp(self, to_email: str, code: str) -> bool: ...


@dataclass(frozen=True)
class OtpStatus:
    cooldown: bool
    resend_lock: bool
    used: int
    max: int
    resend_interval_seconds: int
    cooldown_seconds: int


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class OtpEngine:
    """Signup passcodes with resend throttling, attempt limits and cooldown.

    All state lives in the TTL store under ``otp:signup:{email}:*`` so that
    limits hold across processes.
    """

    def __init__(
        self,
        cache: CacheBackend,
        notifier: Optional[OtpNotifier] = None,
        *,
        ttl_seconds: int = 300,
        max_resends: int = 4,
        resend_interval_seconds: int = 60,
        cooldown_seconds: int = 300,
        max_verify_attempts: int = 5,
        resend_window_seconds: int = 1800,
    ) -> None:
        self.cache = cache
        self.notifier = notifier
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_resends = max_resends
        self.resend_interval = timedelta(seconds=resend_interval_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.max_verify_attempts = max_verify_attempts
        self.resend_window = timedelta(seconds=resend_window_seconds)

    @staticmethod
    def _key(email: str, part: str) -> str:
        return f"otp:signup:{email}:{part}"

    @staticmethod
    def _require_email(email: Optional[str]) -> str:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("email is required", detail={"field": "email"})
        return normalized

    async def _retry_after(self, key: str, fallback: timedelta) -> int:
        remaining_ms = await self.cache.ttl_ms(key)
        if remaining_ms is None:
            return int(fallback.total_seconds())
        return max(1, math.ceil(remaining_ms / 1000))

    async def generate_and_send(self, email: str) -> OtpStatus:
        email = self._require_email(email)
        cooldown_key = self._key(email, "cooldown")
        lock_key = self._key(email, "resend_lock")

        if await self.cache.exists(cooldown_key):
            raise Cooldown(
                "too many attempts; try again later",
                retry_after_seconds=await self._retry_after(cooldown_key, self.cooldown),
            )
        if await self.cache.exists(lock_key):
            raise ResendTooSoon(
                "please wait before requesting another code",
                retry_after_seconds=await self._retry_after(lock_key, self.resend_interval),
            )

        used = await self.cache.incr_with_ttl(self._key(email, "resends"), self.resend_window)
        if used > self.max_resends:
            await self.cache.set(cooldown_key, "1", self.cooldown)
            logger.warning("otp_resend_quota_exceeded", used=used, max=self.max_resends)
            raise ResendQuotaExceeded(
                "too many codes requested; try again later",
                retry_after_seconds=int(self.cooldown.total_seconds()),
                used=used,
                max=self.max_resends,
            )

        code = str(secrets.randbelow(CODE_MAX - CODE_MIN + 1) + CODE_MIN)
        await self.cache.set(self._key(email, "code"), _hash_code(code), self.ttl)
        await self.cache.set(self._key(email, "attempts"), "0", self.ttl)
        await self.cache.set(lock_key, "1", self.resend_interval)

        if self.notifier is not None:
            try:
                sent = await asyncio.to_thread(self.notifier.send_otp, email, code)
            except Exception as exc:
                logger.error("otp_send_failed", error_type=type(exc).__name__, error=str(exc))
            else:
                if not sent:
                    logger.error("otp_send_failed", error_type="delivery_rejected")
        logger.info("otp_issued", used=used, max=self.max_resends)
        return OtpStatus(
            cooldown=False,
            resend_lock=True,
            used=used,
            max=self.max_resends,
            resend_interval_seconds=int(self.resend_interval.total_seconds()),
            cooldown_seconds=int(self.cooldown.total_seconds()),
        )

    async def verify_and_consume(self, email: str, code: str) -> None:
        email = self._require_email(email)
        code_key = self._key(email, "code")
        attempts_key = self._key(email, "attempts")
        lock_key = self._key(email, "resend_lock")

        stored = await self.cache.get(code_key)
        if stored is None:
            raise Expired("code has expired; request a new one")

        if not hmac.compare_digest(stored, _hash_code((code or "").strip())):
            attempts = await self.cache.incr_with_ttl(attempts_key, self.ttl)
            if attempts >= self.max_verify_attempts:
                await self.cache.delete(code_key, attempts_key, lock_key)
                await self.cache.set(self._key(email, "cooldown"), "1", self.cooldown)
                logger.warning("otp_attempts_exhausted", attempts=attempts)
                raise TooManyAttempts(
                    "too many incorrect codes; try again later",
                    retry_after_seconds=int(self.cooldown.total_seconds()),
                )
            raise IncorrectCode(
                "incorrect code",
                attempts_remaining=self.max_verify_attempts - attempts,
            )

        # Only the caller whose DEL removes the code wins
        if not await self.cache.delete(code_key):
            raise Expired("code has expired; request a new one")
        # The resends counter survives success so the window still applies
        await self.cache.delete(attempts_key, lock_key)
        logger.info("otp_verified")

    async def status(self, email: str) -> OtpStatus:
        email = self._require_email(email)
        used_raw = await self.cache.get(self._key(email, "resends"))
        try:
            used = int(used_raw) if used_raw is not None else 0
        except ValueError:
            used = 0
        return OtpStatus(
            cooldown=await self.cache.exists(self._key(email, "cooldown")),
            resend_lock=await self.cache.exists(self._key(email, "resend_lock")),
            used=used,
            max=self.max_resends,
            resend_interval_seconds=int(self.resend_interval.total_seconds()),
            cooldown_seconds=int(self.cooldown.total_seconds()),
        )
