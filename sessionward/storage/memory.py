from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import DeviceMetadata, RefreshTokenRecord, User


class MemoryStore:
    """In-process account and refresh-token store for tests and local runs.

    Returned objects are copies so callers cannot mutate stored state behind
    the store's back, mirroring what a database round-trip gives.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[int, RefreshTokenRecord] = {}
        self._refresh_id_seq = itertools.count(1)
        self.device_logins: Dict[int, DeviceMetadata] = {}
        self._device_id_seq = itertools.count(1)
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- accounts ---------------------------------------------------------

    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        enabled: bool = False,
        locked: bool = True,
        verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                display_name=display_name,
                role=role,
                enabled=enabled,
                locked=locked,
                verified=verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_account_state(
        self,
        user_id: str,
        *,
        enabled: Optional[bool] = None,
        locked: Optional[bool] = None,
        verified: Optional[bool] = None,
        deleted: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if enabled is not None:
                user.enabled = enabled
            if locked is not None:
                user.locked = locked
            if verified is not None:
                user.verified = verified
            if deleted is not None:
                user.deleted = deleted
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- refresh tokens ---------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        session_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(r.token_hash == token_hash for r in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            record = RefreshTokenRecord(
                id=next(self._refresh_id_seq),
                token_hash=token_hash,
                user_id=user_id,
                session_id=session_id,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            self.refresh_tokens[record.id] = record
            return replace(record)

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.token_hash == token_hash and record.is_active(now):
                    return replace(record)
            return None

    def revoke_refresh_token_if_active(self, record_id: int, now: datetime) -> bool:
        """Flip ``revoked`` only while the record is still active.

        Check and write happen under one lock acquisition, so two callers racing
        on the same record cannot both see True.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if not record or not record.is_active(now):
                return False
            record.revoked = True
            return True

    def list_active_refresh_tokens(
        self, user_id: str, now: datetime
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            active = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.is_active(now)
            ]
        return sorted(active, key=lambda r: (r.issued_at, r.id), reverse=True)

    def revoke_refresh_tokens(self, record_ids: Iterable[int]) -> int:
        count = 0
        with self._data_lock:
            for record_id in record_ids:
                record = self.refresh_tokens.get(record_id)
                if record and not record.revoked:
                    record.revoked = True
                    count += 1
        return count

    def revoke_user_refresh_tokens(
        self, user_id: str, session_id: Optional[str] = None
    ) -> int:
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.revoked:
                    continue
                if session_id is not None and record.session_id != session_id:
                    continue
                record.revoked = True
                count += 1
        return count

    def purge_refresh_tokens(self, as_of: datetime) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, r in self.refresh_tokens.items()
                if r.issued_at <= as_of and (r.revoked or r.expires_at < as_of)
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
        if stale:
            self.logger.info("refresh_tokens_purged", count=len(stale))
        return len(stale)

    # -- device logins ----------------------------------------------------

    def record_device_login(
        self,
        user_id: str,
        session_id: str,
        *,
        provider: str,
        device_type: str,
        location: Optional[str],
        user_agent: Optional[str],
        logged_in_at: datetime,
    ) -> DeviceMetadata:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            meta = DeviceMetadata(
                id=next(self._device_id_seq),
                user_id=user_id,
                session_id=session_id,
                provider=provider,
                device_type=device_type,
                location=location,
                user_agent=user_agent,
                last_login_at=logged_in_at,
            )
            self.device_logins[meta.id] = meta
            return replace(meta)

    def list_device_logins(self, user_id: str, limit: int = 50) -> List[DeviceMetadata]:
        with self._data_lock:
            rows = [replace(m) for m in self.device_logins.values() if m.user_id == user_id]
        rows.sort(key=lambda m: (m.last_login_at, m.id), reverse=True)
        return rows[:limit]
