from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from sessionward.logging import get_logger
from sessionward.service.errors import DeviceMismatch, InvalidOrExpiredToken
from sessionward.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)

MAX_SESSION_ID_LENGTH = 64


class SessionStore(Protocol):
    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        session_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshTokenRecord: ...

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token_if_active(self, record_id: int, now: datetime) -> bool: ...

    def list_active_refresh_tokens(
        self, user_id: str, now: datetime
    ) -> List[RefreshTokenRecord]: ...

    def revoke_refresh_tokens(self, record_ids: Iterable[int]) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, session_id: Optional[str] = None
    ) -> int: ...

    def purge_refresh_tokens(self, as_of: datetime) -> int: ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh token; ``raw_token`` is never stored."""

    raw_token: str
    user_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"IssuedRefreshToken(user_id={self.user_id!r}, session_id={self.session_id!r}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


class SessionManager:
    """Refresh-token issuance, rotation, per-user cap and revocation."""

    def __init__(
        self,
        store: SessionStore,
        *,
        inactivity_seconds: int,
        absolute_seconds: int,
        max_sessions: int,
        token_bytes: int = 64,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.inactivity = timedelta(seconds=inactivity_seconds)
        self.absolute = timedelta(seconds=absolute_seconds)
        self.max_sessions = max(1, max_sessions)
        self.token_bytes = max(32, token_bytes)
        self._now = now_fn or utcnow

    def _session_id(self, hint: Optional[str]) -> str:
        if hint is not None:
            trimmed = hint.strip()[:MAX_SESSION_ID_LENGTH]
            if trimmed:
                return trimmed
        return f"sess-{_b64url(secrets.token_bytes(16))}"

    def issue(self, user_id: str, session_hint: Optional[str] = None) -> IssuedRefreshToken:
        raw_token = _b64url(secrets.token_bytes(self.token_bytes))
        session_id = self._session_id(session_hint)
        issued_at = self._now()
        expires_at = min(issued_at + self.inactivity, issued_at + self.absolute)
        record = self.store.create_refresh_token(
            user_id, hash_refresh_token(raw_token), session_id, issued_at, expires_at
        )
        self._enforce_cap(user_id)
        logger.info(
            "refresh_token_issued",
            user_id=user_id,
            session_id=session_id,
            record_id=record.id,
        )
        return IssuedRefreshToken(
            raw_token=raw_token,
            user_id=user_id,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _enforce_cap(self, user_id: str) -> None:
        # Concurrent issuers may each see fewer than max and briefly overshoot
        active = self.store.list_active_refresh_tokens(user_id, self._now())
        overflow = [record.id for record in active[self.max_sessions :]]
        if not overflow:
            return
        evicted = self.store.revoke_refresh_tokens(overflow)
        logger.info(
            "refresh_sessions_evicted",
            user_id=user_id,
            evicted=evicted,
            max_sessions=self.max_sessions,
        )

    def validate_and_rotate(
        self, raw_token: str, session_id: Optional[str] = None
    ) -> IssuedRefreshToken:
        """Swap a live refresh token for a new one bound to the same session.

        Raises ``InvalidOrExpiredToken`` when the token is unknown, revoked,
        expired, or lost a concurrent rotation, and ``DeviceMismatch`` when a
        non-blank ``session_id`` is given and does not match. A mismatch
        leaves the stored record untouched.

        The old record is revoked before its replacement is written. If the
        store fails in between, the caller gets the store error and the old
        token stays burned, so the client has to log in again.
        """

        if not raw_token:
            raise InvalidOrExpiredToken()
        hint = session_id.strip()[:MAX_SESSION_ID_LENGTH] if session_id else ""
        now = self._now()
        record = self.store.get_active_refresh_token(hash_refresh_token(raw_token), now)
        if record is None:
            logger.info("refresh_token_rejected", reason="not_active")
            raise InvalidOrExpiredToken()
        if hint and hint != record.session_id:
            logger.warning(
                "refresh_token_rejected",
                reason="device_mismatch",
                user_id=record.user_id,
                record_id=record.id,
            )
            raise DeviceMismatch()
        if not self.store.revoke_refresh_token_if_active(record.id, now):
            logger.warning(
                "refresh_token_rejected",
                reason="rotation_race",
                user_id=record.user_id,
                record_id=record.id,
            )
            raise InvalidOrExpiredToken()
        return self.issue(record.user_id, record.session_id)

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_sessions_revoked", user_id=user_id, count=count)
        return count

    def revoke_all_for_user_session(self, user_id: str, session_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, session_id)
        logger.info(
            "refresh_sessions_revoked",
            user_id=user_id,
            session_id=session_id,
            count=count,
        )
        return count

    def purge_expired_and_revoked(self, as_of: Optional[datetime] = None) -> int:
        return self.store.purge_refresh_tokens(as_of or self._now())
