from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation, StoreUnavailable
from sessionward.storage.models import DeviceMetadata, RefreshTokenRecord, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        locked BOOLEAN NOT NULL DEFAULT TRUE,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        token_hash CHAR(64) NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_id VARCHAR(64) NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_user_active_idx
        ON refresh_token (user_id, issued_at DESC) WHERE revoked = FALSE
    """,
    """
    CREATE TABLE IF NOT EXISTS device_metadata (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_id VARCHAR(64) NOT NULL,
        provider VARCHAR(20) NOT NULL DEFAULT 'local',
        device_type VARCHAR(16) NOT NULL DEFAULT 'unknown',
        location VARCHAR(255),
        user_agent VARCHAR(255),
        last_login_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS device_metadata_user_idx
        ON device_metadata (user_id, last_login_at DESC)
    """,
)


class PostgresStore:
    """Postgres-backed account and refresh-token store."""

    def __init__(
        self, dsn: str, *, connect_timeout: float = 5.0, pool_timeout: float = 10.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.connect_timeout = connect_timeout
        self.pool_timeout = pool_timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": int(connect_timeout),
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        try:
            with self.pool.connection(timeout=self.pool_timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the account, refresh-token and device tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            role=row.get("role", "user"),
            enabled=bool(row.get("enabled", False)),
            locked=bool(row.get("locked", True)),
            verified=bool(row.get("verified", False)),
            deleted=bool(row.get("deleted", False)),
            created_at=row["created_at"],
            meta=row.get("meta"),
        )

    @staticmethod
    def _refresh_from_row(row: dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=int(row["id"]),
            token_hash=row["token_hash"].strip(),
            user_id=str(row["user_id"]),
            session_id=row["session_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
        )

    @staticmethod
    def _device_from_row(row: dict[str, Any]) -> DeviceMetadata:
        return DeviceMetadata(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            session_id=row["session_id"],
            provider=row["provider"],
            device_type=row["device_type"],
            location=row.get("location"),
            user_agent=row.get("user_agent"),
            last_login_at=row["last_login_at"],
        )

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
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, role, enabled, locked, verified, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        display_name,
                        role,
                        enabled,
                        locked,
                        verified,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_account_state(
        self,
        user_id: str,
        *,
        enabled: Optional[bool] = None,
        locked: Optional[bool] = None,
        verified: Optional[bool] = None,
        deleted: Optional[bool] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET enabled = COALESCE(%s, enabled),
                    locked = COALESCE(%s, locked),
                    verified = COALESCE(%s, verified),
                    deleted = COALESCE(%s, deleted)
                WHERE id = %s
                RETURNING *
                """,
                (enabled, locked, verified, deleted, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- refresh tokens ---------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        session_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, session_id, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_hash, user_id, session_id, issued_at, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._refresh_from_row(row)

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token_hash = %s AND revoked = FALSE AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token_if_active(self, record_id: int, now: datetime) -> bool:
        """Conditionally revoke one record; False means another caller got there first."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE id = %s AND revoked = FALSE AND expires_at > %s
                RETURNING id
                """,
                (record_id, now),
            ).fetchone()
        return row is not None

    def list_active_refresh_tokens(
        self, user_id: str, now: datetime
    ) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY issued_at DESC, id DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def revoke_refresh_tokens(self, record_ids: Iterable[int]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE id = ANY(%s) AND revoked = FALSE",
                (ids,),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(
        self, user_id: str, session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if session_id is None:
                cur = conn.execute(
                    "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                    (user_id,),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE refresh_token SET revoked = TRUE
                    WHERE user_id = %s AND session_id = %s AND revoked = FALSE
                    """,
                    (user_id, session_id),
                )
            return cur.rowcount

    def purge_refresh_tokens(self, as_of: datetime) -> int:
        # Rows issued after as_of are left alone even if already revoked
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE issued_at <= %s AND (revoked = TRUE OR expires_at < %s)
                """,
                (as_of, as_of),
            )
            count = cur.rowcount
        if count:
            self.logger.info("refresh_tokens_purged", count=count)
        return count

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO device_metadata (user_id, session_id, provider, device_type, location, user_agent, last_login_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, session_id, provider, device_type, location, user_agent, logged_in_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._device_from_row(row)

    def list_device_logins(self, user_id: str, limit: int = 50) -> List[DeviceMetadata]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM device_metadata
                WHERE user_id = %s
                ORDER BY last_login_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]
