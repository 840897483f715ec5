"""Refresh-token issuance, rotation, session cap and purge."""

import threading
from datetime import timedelta

import pytest

from sessionward.service.errors import DeviceMismatch, InvalidOrExpiredToken
from sessionward.service.sessions import SessionManager, hash_refresh_token
from sessionward.storage.errors import StoreUnavailable


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@example.com", enabled=True, locked=False, verified=True)


def _active(memory_store, user, clock):
    return memory_store.list_active_refresh_tokens(user.id, clock())


class TestIssue:
    def test_stores_only_the_hash(self, sessions, memory_store, user):
        issued = sessions.issue(user.id, "phone")
        [record] = memory_store.refresh_tokens.values()
        assert record.token_hash == hash_refresh_token(issued.raw_token)
        assert issued.raw_token not in repr(issued)
        assert record.session_id == "phone"

    def test_token_carries_at_least_256_bits(self, memory_store, user, clock):
        manager = SessionManager(
            memory_store, inactivity_seconds=60, absolute_seconds=120, max_sessions=3,
            token_bytes=8, now_fn=clock,
        )
        issued = manager.issue(user.id)
        # 32 bytes base64url without padding
        assert len(issued.raw_token) >= 43

    def test_synthesizes_session_id_when_missing(self, sessions, user):
        issued = sessions.issue(user.id)
        assert issued.session_id.startswith("sess-")
        assert len(issued.session_id) <= 64
        assert sessions.issue(user.id, "   ").session_id.startswith("sess-")

    def test_session_hint_trimmed_and_capped(self, sessions, user):
        issued = sessions.issue(user.id, "  " + "d" * 80 + "  ")
        assert issued.session_id == "d" * 64

    def test_expiry_is_min_of_inactivity_and_absolute(self, memory_store, user, clock):
        manager = SessionManager(
            memory_store, inactivity_seconds=3600, absolute_seconds=600, max_sessions=3,
            now_fn=clock,
        )
        issued = manager.issue(user.id)
        assert issued.expires_at == clock() + timedelta(seconds=600)


class TestSessionCap:
    def test_oldest_sessions_evicted_beyond_cap(self, sessions, memory_store, user, clock):
        issued = []
        for device in ["a", "b", "c", "d"]:
            issued.append(sessions.issue(user.id, device))
            clock.advance(1)

        active = _active(memory_store, user, clock)
        assert len(active) == 3
        assert {r.session_id for r in active} == {"b", "c", "d"}
        with pytest.raises(InvalidOrExpiredToken):
            sessions.validate_and_rotate(issued[0].raw_token)

    def test_ties_on_issued_at_broken_by_id(self, sessions, memory_store, user, clock):
        for device in ["a", "b", "c", "d"]:
            sessions.issue(user.id, device)
        assert {r.session_id for r in _active(memory_store, user, clock)} == {"b", "c", "d"}

    def test_cap_is_per_user(self, sessions, memory_store, user, clock):
        other = memory_store.create_user("bob@example.com")
        for _ in range(3):
            sessions.issue(user.id)
        sessions.issue(other.id)
        assert len(_active(memory_store, user, clock)) == 3


class TestRotation:
    def test_rotation_revokes_old_and_keeps_session(self, sessions, memory_store, user, clock):
        first = sessions.issue(user.id, "laptop")
        clock.advance(5)
        second = sessions.validate_and_rotate(first.raw_token, "laptop")

        assert second.raw_token != first.raw_token
        assert second.session_id == "laptop"
        with pytest.raises(InvalidOrExpiredToken):
            sessions.validate_and_rotate(first.raw_token)
        assert [r.session_id for r in _active(memory_store, user, clock)] == ["laptop"]

    def test_unknown_token_rejected(self, sessions):
        with pytest.raises(InvalidOrExpiredToken):
            sessions.validate_and_rotate("never-issued")
        with pytest.raises(InvalidOrExpiredToken):
            sessions.validate_and_rotate("")

    def test_device_mismatch_leaves_record_active(self, sessions, user):
        issued = sessions.issue(user.id, "laptop")
        with pytest.raises(DeviceMismatch):
            sessions.validate_and_rotate(issued.raw_token, "phone")
        assert sessions.validate_and_rotate(issued.raw_token, "laptop").session_id == "laptop"

    def test_blank_session_id_is_not_a_binding(self, sessions, user):
        issued = sessions.issue(user.id, "laptop")
        rotated = sessions.validate_and_rotate(issued.raw_token, "   ")
        assert rotated.session_id == "laptop"
        assert sessions.validate_and_rotate(rotated.raw_token, "").session_id == "laptop"

    def test_session_id_compared_after_trim_and_cap(self, sessions, user):
        issued = sessions.issue(user.id, "d" * 80)
        assert sessions.validate_and_rotate(issued.raw_token, "  " + "d" * 70).session_id == "d" * 64

    def test_store_failure_after_revoke_burns_old_token(self, memory_store, user, clock):
        class FailingInsertStore:
            def __init__(self, inner):
                self.inner = inner
                self.fail_next_insert = False

            def __getattr__(self, name):
                return getattr(self.inner, name)

            def create_refresh_token(self, *args):
                if self.fail_next_insert:
                    self.fail_next_insert = False
                    raise StoreUnavailable("postgres", "connection lost")
                return self.inner.create_refresh_token(*args)

        store = FailingInsertStore(memory_store)
        manager = SessionManager(
            store, inactivity_seconds=3600, absolute_seconds=86400, max_sessions=3, now_fn=clock
        )
        issued = manager.issue(user.id, "laptop")
        store.fail_next_insert = True

        with pytest.raises(StoreUnavailable):
            manager.validate_and_rotate(issued.raw_token)
        with pytest.raises(InvalidOrExpiredToken):
            manager.validate_and_rotate(issued.raw_token)
        assert _active(memory_store, user, clock) == []

    def test_concurrent_rotation_has_one_winner(self, sessions, user):
        issued = sessions.issue(user.id, "laptop")
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def rotate():
            barrier.wait()
            try:
                sessions.validate_and_rotate(issued.raw_token)
                result = "ok"
            except InvalidOrExpiredToken:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=rotate) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 7

    def test_sliding_window_expires_idle_session(self, memory_store, user, clock):
        manager = SessionManager(
            memory_store, inactivity_seconds=1, absolute_seconds=3600, max_sessions=3,
            now_fn=clock,
        )
        issued = manager.issue(user.id)
        clock.advance(2)
        with pytest.raises(InvalidOrExpiredToken):
            manager.validate_and_rotate(issued.raw_token)

    def test_rotation_restarts_inactivity_window(self, memory_store, user, clock):
        manager = SessionManager(
            memory_store, inactivity_seconds=60, absolute_seconds=3600, max_sessions=3,
            now_fn=clock,
        )
        token = manager.issue(user.id).raw_token
        for _ in range(5):
            clock.advance(50)
            token = manager.validate_and_rotate(token).raw_token
        assert clock() - manager.store.get_active_refresh_token(
            hash_refresh_token(token), clock()
        ).issued_at == timedelta(0)


class TestRevokeAndPurge:
    def test_revoke_all_is_idempotent(self, sessions, user):
        sessions.issue(user.id, "a")
        sessions.issue(user.id, "b")
        assert sessions.revoke_all_for_user(user.id) == 2
        assert sessions.revoke_all_for_user(user.id) == 0

    def test_revoke_single_session(self, sessions, memory_store, user, clock):
        sessions.issue(user.id, "a")
        keep = sessions.issue(user.id, "b")
        assert sessions.revoke_all_for_user_session(user.id, "a") == 1
        assert sessions.revoke_all_for_user_session(user.id, "a") == 0
        assert [r.session_id for r in _active(memory_store, user, clock)] == [keep.session_id]

    def test_purge_removes_revoked_and_expired(self, memory_store, user, clock):
        manager = SessionManager(
            memory_store, inactivity_seconds=60, absolute_seconds=60, max_sessions=5,
            now_fn=clock,
        )
        manager.issue(user.id, "expired")
        revoked = manager.issue(user.id, "revoked")
        manager.revoke_all_for_user_session(user.id, revoked.session_id)
        clock.advance(61)
        live = manager.issue(user.id, "live")

        assert manager.purge_expired_and_revoked() == 2
        assert [r.session_id for r in memory_store.refresh_tokens.values()] == [live.session_id]

    def test_purge_keeps_rows_issued_after_cutoff(self, sessions, memory_store, user, clock):
        cutoff = clock()
        clock.advance(10)
        late = sessions.issue(user.id, "late")
        sessions.revoke_all_for_user(user.id)

        assert sessions.purge_expired_and_revoked(cutoff) == 0
        assert [r.session_id for r in memory_store.refresh_tokens.values()] == [late.session_id]
