"""Blacklist and revocation fence behaviour."""

from datetime import timedelta

from sessionward.service.revocation import RevocationStore, sha256url
from sessionward.storage.errors import StoreUnavailable


class BrokenCache:
    """TTL store whose every call fails like an unreachable Redis."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreUnavailable("redis", "connection refused")

    set = get = exists = delete = incr_with_ttl = ttl_ms = _fail


class TestBlacklist:
    async def test_blacklisted_until_ttl_elapses(self, revocation, codec, clock):
        token = codec.issue("alice@example.com")
        assert await revocation.is_blacklisted(token) is False

        await revocation.blacklist(token)
        assert await revocation.is_blacklisted(token) is True

        # exp - now - 5s skew
        clock.advance(900 - 5 - 1)
        assert await revocation.is_blacklisted(token) is True
        clock.advance(2)
        assert await revocation.is_blacklisted(token) is False

    async def test_key_uses_issuer_and_jti(self, revocation, codec, cache):
        token = codec.issue("alice@example.com")
        await revocation.blacklist(token)
        jti = codec.parse_and_verify(token).token_id
        expected = f"jwt:bl:iss:{sha256url('https://auth.test')}:jti:{jti}"
        assert await cache.get(expected) == "1"

    async def test_ttl_has_floor_for_nearly_expired_token(self, revocation, codec, clock, cache):
        token = codec.issue("alice@example.com")
        clock.advance(899)
        await revocation.blacklist(token)
        jti = codec.parse_and_verify(token).token_id
        assert await cache.ttl_ms(revocation.jti_key(jti, codec.issuer)) == 100

    def test_ttl_computation(self, revocation, clock):
        exp = int(clock().timestamp()) + 60
        assert revocation.blacklist_ttl_ms(exp) == 55_000
        assert revocation.blacklist_ttl_ms(exp - 120) == 100

    def test_expiry_margin_matches_blacklist_skew(self, revocation, clock):
        exp = int(clock().timestamp()) + 60
        assert revocation.within_expiry_margin(exp) is False
        clock.advance(55)
        assert revocation.within_expiry_margin(exp) is True

    async def test_unparseable_token_is_skipped(self, revocation, cache):
        await revocation.blacklist("not-a-token")
        assert cache._entries == {}
        assert await revocation.is_blacklisted("not-a-token") is False

    async def test_hash_key_used_when_token_has_no_jti(self, revocation, cache, codec):
        token = codec.issue("alice@example.com")
        claims = codec.parse_and_verify(token)
        # Simulate a token minted without jti by writing the hash key directly
        await cache.set(revocation.hash_key(token, claims.issuer), "1", timedelta(minutes=1))
        assert await revocation.is_blacklisted(token) is True

    async def test_store_failure_fails_open(self, codec, clock):
        broken = BrokenCache()
        store = RevocationStore(broken, codec, issuer=codec.issuer, now_fn=clock)
        token = codec.issue("alice@example.com")

        await store.blacklist(token)
        assert await store.is_blacklisted(token) is False
        assert broken.calls == 2


class TestFence:
    async def test_fence_revokes_tokens_issued_at_or_before(self, revocation, clock):
        fence_at = int(clock().timestamp())
        await revocation.set_revocation_fence(
            "https://auth.test", "alice@example.com", fence_at, timedelta(minutes=16)
        )
        assert await revocation.is_before_fence("https://auth.test", "alice@example.com", fence_at - 1)
        assert await revocation.is_before_fence("https://auth.test", "alice@example.com", fence_at)
        assert not await revocation.is_before_fence(
            "https://auth.test", "alice@example.com", fence_at + 1
        )

    async def test_fence_is_per_subject(self, revocation, clock):
        now = int(clock().timestamp())
        await revocation.set_revocation_fence(None, "alice@example.com", now, timedelta(minutes=5))
        assert not await revocation.is_before_fence(None, "bob@example.com", now - 10)

    async def test_no_fence_means_not_revoked(self, revocation):
        assert not await revocation.is_before_fence("https://auth.test", "nobody@example.com", 0)

    async def test_fence_expires_with_ttl(self, revocation, clock):
        now = int(clock().timestamp())
        await revocation.set_revocation_fence(None, "alice@example.com", now, timedelta(seconds=30))
        clock.advance(31)
        assert not await revocation.is_before_fence(None, "alice@example.com", now - 1)

    def test_fence_key_format(self, revocation):
        key = revocation.fence_key("https://auth.test", "alice@example.com")
        assert key == (
            f"jwt:bl:iss:{sha256url('https://auth.test')}:"
            f"sub:{sha256url('alice@example.com')}:revoked-after"
        )

    async def test_fence_store_failure_fails_open(self, codec, clock):
        store = RevocationStore(BrokenCache(), codec, now_fn=clock)
        await store.set_revocation_fence(None, "alice@example.com", 10, timedelta(seconds=5))
        assert await store.is_before_fence(None, "alice@example.com", 1) is False
