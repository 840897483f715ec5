import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

TEST_JWT_SECRET = "c2Vzc2lvbndhcmQtdGVzdC1zaWduaW5nLWtleS0wMTIzNDU2Nzg5YWJjZGVmZ2hpag=="

# Set before any import that might build Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
# Blank REDIS_URL selects the in-process MemoryCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionward.config import Settings  # noqa: E402
from sessionward.service.accounts import AccountCache  # noqa: E402
from sessionward.service.auth import AuthService  # noqa: E402
from sessionward.service.keys import SigningKey  # noqa: E402
from sessionward.service.otp import OtpEngine  # noqa: E402
from sessionward.service.revocation import RevocationStore  # noqa: E402
from sessionward.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionward.service.sessions import SessionManager  # noqa: E402
from sessionward.service.tokens import TokenCodec  # noqa: E402
from sessionward.storage.memory import MemoryStore  # noqa: E402
from sessionward.storage.memory_cache import MemoryCache  # noqa: E402


class FrozenClock:
    """Injectable ``now_fn`` that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    """Captures passcodes instead of emailing them."""

    def __init__(self, result: bool = True) -> None:
        self.sent: list[tuple[str, str]] = []
        self.result = result

    def send_otp(self, to_email: str, code: str) -> bool:
        self.sent.append((to_email, code))
        return self.result

    def last_code(self, email: str) -> str:
        return next(code for to, code in reversed(self.sent) if to == email)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        jwt_issuer="https://auth.test",
        jwt_audience="sessionward-tests",
        access_token_ttl_seconds=900,
        max_sessions_per_user=3,
    )


@pytest.fixture
def signing_key(settings):
    return SigningKey.from_base64(settings.jwt_secret)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(now_fn=clock)


@pytest.fixture
def codec(signing_key, settings, clock):
    return TokenCodec(
        signing_key,
        validity_seconds=settings.access_token_ttl_seconds,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock_skew_seconds=settings.jwt_clock_skew_seconds,
        now_fn=clock,
    )


@pytest.fixture
def revocation(cache, codec, settings, clock):
    return RevocationStore(
        cache,
        codec,
        issuer=settings.jwt_issuer,
        skew_ms=settings.blacklist_skew_ms,
        min_ttl_ms=settings.blacklist_min_ttl_ms,
        now_fn=clock,
    )


@pytest.fixture
def sessions(memory_store, settings, clock):
    return SessionManager(
        memory_store,
        inactivity_seconds=settings.refresh_inactivity_seconds,
        absolute_seconds=settings.refresh_absolute_seconds,
        max_sessions=settings.max_sessions_per_user,
        token_bytes=settings.refresh_token_bytes,
        now_fn=clock,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def otp(cache, notifier, settings):
    return OtpEngine(
        cache,
        notifier,
        ttl_seconds=settings.otp_ttl_seconds,
        max_resends=settings.otp_max_resends,
        resend_interval_seconds=settings.otp_resend_interval_seconds,
        cooldown_seconds=settings.otp_cooldown_seconds,
        max_verify_attempts=settings.otp_max_verify_attempts,
        resend_window_seconds=settings.otp_resend_window_seconds,
    )


@pytest.fixture
def accounts(memory_store, settings, clock):
    return AccountCache(
        memory_store,
        ttl_seconds=settings.account_cache_ttl_seconds,
        max_entries=settings.account_cache_max_entries,
        now_fn=clock,
    )


@pytest.fixture
def auth_service(memory_store, codec, sessions, revocation, otp, accounts, settings, clock):
    return AuthService(
        memory_store,
        codec=codec,
        sessions=sessions,
        revocation=revocation,
        otp=otp,
        accounts=accounts,
        settings=settings,
        now_fn=clock,
    )


@pytest.fixture
def active_user(memory_store, auth_service):
    """A verified, enabled account with password ``CorrectHorse9``."""
    user = memory_store.create_user(
        "alice@example.com", "Alice", enabled=True, locked=False, verified=True
    )
    auth_service.save_password(user.id, "CorrectHorse9")
    return memory_store.get_user(user.id)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
