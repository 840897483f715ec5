from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionward.config import get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.accounts import AccountCache
from sessionward.service.auth import AuthService
from sessionward.service.email import EmailService
from sessionward.service.keys import SigningKey
from sessionward.service.otp import OtpEngine
from sessionward.service.revocation import RevocationStore
from sessionward.service.sessions import SessionManager
from sessionward.service.tokens import TokenCodec
from sessionward.storage.memory import MemoryStore
from sessionward.storage.memory_cache import MemoryCache
from sessionward.storage.postgres import PostgresStore
from sessionward.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Fatal before anything else is opened
        self.signing_key = SigningKey.from_base64(self.settings.jwt_secret)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token blacklist, revocation fences and OTP state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; blacklist, fences and OTP "
                    "state are in-process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(now_fn=now_fn)

        self.codec = TokenCodec(
            self.signing_key,
            validity_seconds=self.settings.access_token_ttl_seconds,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            clock_skew_seconds=self.settings.jwt_clock_skew_seconds,
            now_fn=now_fn,
        )
        self.revocation = RevocationStore(
            self.cache,
            self.codec,
            issuer=self.settings.jwt_issuer,
            skew_ms=self.settings.blacklist_skew_ms,
            min_ttl_ms=self.settings.blacklist_min_ttl_ms,
            now_fn=now_fn,
        )
        self.sessions = SessionManager(
            self.store,
            inactivity_seconds=self.settings.refresh_inactivity_seconds,
            absolute_seconds=self.settings.refresh_absolute_seconds,
            max_sessions=self.settings.max_sessions_per_user,
            token_bytes=self.settings.refresh_token_bytes,
            now_fn=now_fn,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
        )
        self.otp = OtpEngine(
            self.cache,
            self.email,
            ttl_seconds=self.settings.otp_ttl_seconds,
            max_resends=self.settings.otp_max_resends,
            resend_interval_seconds=self.settings.otp_resend_interval_seconds,
            cooldown_seconds=self.settings.otp_cooldown_seconds,
            max_verify_attempts=self.settings.otp_max_verify_attempts,
            resend_window_seconds=self.settings.otp_resend_window_seconds,
        )
        self.accounts = AccountCache(
            self.store,
            ttl_seconds=self.settings.account_cache_ttl_seconds,
            max_entries=self.settings.account_cache_max_entries,
            now_fn=now_fn,
        )
        self.auth = AuthService(
            self.store,
            codec=self.codec,
            sessions=self.sessions,
            revocation=self.revocation,
            otp=self.otp,
            accounts=self.accounts,
            settings=self.settings,
            now_fn=now_fn,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            signing_key_bits=self.signing_key.bits,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
    elif isinstance(cache, RedisCache):
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())


def reset_runtime_for_tests(now_fn: Optional[Callable[[], datetime]] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(now_fn=now_fn)
        return runtime
