"""Runtime wiring and startup checks."""

import pytest

from sessionward.config import reset_settings_cache
from sessionward.service.keys import SigningKeyError
from sessionward.service.runtime import (
    Runtime,
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from sessionward.storage.memory import MemoryStore
from sessionward.storage.memory_cache import MemoryCache


def test_get_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_test_mode_falls_back_to_memory_backends():
    runtime = reset_runtime_for_tests()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.signing_key.bits >= 256


def test_missing_signing_key_is_fatal(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "")
    reset_settings_cache()
    with pytest.raises(SigningKeyError):
        Runtime()


def test_redis_required_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    monkeypatch.setenv("REDIS_URL", "")
    reset_settings_cache()
    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime()


def test_reset_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError, match="TEST_MODE"):
        reset_runtime_for_tests()


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:secret@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/sessionward", "postgresql://app:***@db/sessionward"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
