from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.accounts import AccountCache
from sessionward.service.devices import DeviceContext
from sessionward.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidToken,
    NotFoundError,
    ValidationError,
)
from sessionward.service.otp import OtpEngine, OtpStatus, normalize_email
from sessionward.service.revocation import RevocationStore
from sessionward.service.sessions import IssuedRefreshToken, SessionManager
from sessionward.service.tokens import TokenCodec
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import DeviceMetadata, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8


class AccountStore(Protocol):
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
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_account_state(
        self,
        user_id: str,
        *,
        enabled: Optional[bool] = None,
        locked: Optional[bool] = None,
        verified: Optional[bool] = None,
        deleted: Optional[bool] = None,
    ) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

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
    ) -> DeviceMetadata: ...

    def list_device_logins(self, user_id: str, limit: int = 50) -> List[DeviceMetadata]: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, resolved once per request and passed explicitly."""

    user_id: str
    subject: str
    roles: Tuple[str, ...]
    token_id: Optional[str]
    issued_at: datetime
    expires_at: datetime

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class LoginResult:
    user: User
    access_token: str
    expires_in: int
    refresh: IssuedRefreshToken
    issued_at: datetime

    @property
    def refresh_token(self) -> str:
        return self.refresh.raw_token

    @property
    def session_id(self) -> str:
        return self.refresh.session_id


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _rejection_reason(user: User) -> Optional[str]:
    if user.deleted:
        return "deleted"
    if not user.enabled:
        return "disabled"
    if user.locked:
        return "locked"
    if not user.verified:
        return "unverified"
    return None


class AuthService:
    """Login, refresh, bearer authentication, logout and signup verification."""

    def __init__(
        self,
        store: AccountStore,
        *,
        codec: TokenCodec,
        sessions: SessionManager,
        revocation: RevocationStore,
        otp: OtpEngine,
        accounts: AccountCache,
        settings: Settings,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.revocation = revocation
        self.otp = otp
        self.accounts = accounts
        self.settings = settings
        self._now = now_fn or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords --------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- token issuance ---------------------------------------------------

    def _issue_tokens(
        self, user: User, session_id: Optional[str], device: Optional[DeviceContext]
    ) -> LoginResult:
        device = device or DeviceContext()
        hint = session_id if session_id and session_id.strip() else device.session_hint
        refresh = self.sessions.issue(user.id, hint)
        self._record_device_login(user, refresh, device)
        return self._with_access_token(user, refresh)

    def _record_device_login(
        self, user: User, refresh: IssuedRefreshToken, device: DeviceContext
    ) -> DeviceMetadata:
        meta = self.store.record_device_login(
            user.id,
            refresh.session_id,
            provider=device.resolved_provider(),
            device_type=device.resolved_device_type(),
            location=device.resolved_location(),
            user_agent=device.resolved_user_agent(),
            logged_in_at=refresh.issued_at,
        )
        self.logger.info(
            "device_login_recorded",
            user_id=user.id,
            session_id=meta.session_id,
            device_type=meta.device_type,
            provider=meta.provider,
        )
        return meta

    def list_device_logins(self, user_id: str, limit: int = 50) -> List[DeviceMetadata]:
        return self.store.list_device_logins(user_id, limit)

    def _with_access_token(self, user: User, refresh: IssuedRefreshToken) -> LoginResult:
        access_token = self.codec.issue(
            user.email, {"uid": user.id, "roles": [user.role]}
        )
        return LoginResult(
            user=user,
            access_token=access_token,
            expires_in=self.codec.validity_seconds,
            refresh=refresh,
            issued_at=self._now(),
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        session_id: Optional[str] = None,
        device: Optional[DeviceContext] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email) if email else None
        if user is None:
            self.logger.info("login_rejected", reason="unknown_account")
            raise InvalidCredentials()
        if not self.verify_password(user.id, password or ""):
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        reason = _rejection_reason(user)
        if reason:
            self.logger.info("login_rejected", reason=reason, user_id=user.id)
            raise InvalidCredentials()
        result = self._issue_tokens(user, session_id, device)
        self.logger.info("login_succeeded", user_id=user.id, session_id=result.session_id)
        return result

    async def refresh(
        self, raw_refresh_token: str, *, session_id: Optional[str] = None
    ) -> LoginResult:
        rotated = self.sessions.validate_and_rotate(raw_refresh_token, session_id)
        user = self.store.get_user(rotated.user_id)
        reason = "missing" if user is None else _rejection_reason(user)
        if reason:
            self.logger.warning(
                "refresh_rejected_account_state", user_id=rotated.user_id, reason=reason
            )
            self.sessions.revoke_all_for_user(rotated.user_id)
            raise InvalidOrExpiredToken()
        return self._with_access_token(user, rotated)

    # -- bearer authentication -------------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> Optional[Principal]:
        """Resolve an ``Authorization`` header to a ``Principal``.

        Returns None for any failure; the boundary turns that into a single
        generic 401.
        """

        token = extract_bearer(authorization)
        if not token:
            return None
        if await self.revocation.is_blacklisted(token):
            self.logger.info("bearer_rejected", reason="blacklisted")
            return None
        try:
            claims = self.codec.parse_and_verify(token)
        except InvalidToken:
            return None
        issuer = claims.issuer or self.codec.issuer
        if await self.revocation.is_before_fence(issuer, claims.subject, claims.issued_at):
            self.logger.info("bearer_rejected", reason="fenced")
            return None
        user = self.accounts.get_by_email(claims.subject)
        if user is None or _rejection_reason(user):
            self.logger.info("bearer_rejected", reason="account_state")
            return None
        uid = claims.extra.get("uid")
        if uid is not None and uid != user.id:
            self.logger.warning("bearer_rejected", reason="uid_mismatch", user_id=user.id)
            return None
        if not self.codec.validate_for_subject(token, user.email):
            return None
        if self.revocation.within_expiry_margin(claims.expires_at):
            self.logger.info("bearer_rejected", reason="expiry_margin")
            return None
        raw_roles = claims.extra.get("roles")
        if isinstance(raw_roles, list) and all(isinstance(r, str) for r in raw_roles):
            roles = tuple(raw_roles)
        else:
            roles = (user.role,)
        return Principal(
            user_id=user.id,
            subject=claims.subject,
            roles=roles,
            token_id=claims.token_id,
            issued_at=_from_epoch(claims.issued_at),
            expires_at=_from_epoch(claims.expires_at),
        )

    # -- logout / revocation ---------------------------------------------

    async def logout(
        self,
        principal: Principal,
        access_token: Optional[str],
        *,
        session_id: Optional[str] = None,
    ) -> int:
        if session_id:
            revoked = self.sessions.revoke_all_for_user_session(principal.user_id, session_id)
        else:
            revoked = self.sessions.revoke_all_for_user(principal.user_id)
        if access_token and not self.codec.is_expired(access_token):
            await self.revocation.blacklist(access_token)
        self.logger.info(
            "logout", user_id=principal.user_id, session_id=session_id, revoked=revoked
        )
        return revoked

    async def _fence_subject(self, subject: str) -> None:
        ttl = timedelta(seconds=self.codec.validity_seconds + self.codec.clock_skew_seconds)
        await self.revocation.set_revocation_fence(
            self.codec.issuer, subject, int(self._now().timestamp()), ttl
        )

    async def logout_everywhere(self, principal: Principal) -> int:
        revoked = self.sessions.revoke_all_for_user(principal.user_id)
        await self._fence_subject(principal.subject)
        self.logger.info("logout_everywhere", user_id=principal.user_id, revoked=revoked)
        return revoked

    async def suspend_account(self, user_id: str) -> User:
        """Lock an account and cut off every credential it holds right now."""
        user = self.store.update_account_state(user_id, locked=True)
        if user is None:
            raise NotFoundError("account not found", detail={"user_id": user_id})
        self.sessions.revoke_all_for_user(user.id)
        await self._fence_subject(user.email)
        self.accounts.invalidate(user.email)
        self.logger.warning("account_suspended", user_id=user.id)
        return user

    # -- registration -----------------------------------------------------

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Tuple[User, OtpStatus]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = normalize_email(email)
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = self.store.create_user(
                email,
                display_name,
                role="user",
                enabled=False,
                locked=True,
                verified=False,
            )
        except ConstraintViolation:
            raise ConflictError("email already registered", detail={"field": "email"})
        self.save_password(user.id, password)
        self.logger.info("account_registered", user_id=user.id)
        status = await self.otp.generate_and_send(email)
        return user, status

    def _pending_account(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None or user.deleted:
            raise NotFoundError("account not found")
        if user.verified:
            raise ConflictError("account already verified")
        return user

    async def resend_otp(self, email: str) -> OtpStatus:
        email = normalize_email(email)
        self._pending_account(email)
        return await self.otp.generate_and_send(email)

    async def otp_status(self, email: str) -> OtpStatus:
        return await self.otp.status(email)

    async def verify_registration(
        self,
        email: str,
        code: str,
        *,
        session_id: Optional[str] = None,
        device: Optional[DeviceContext] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        pending = self._pending_account(email)
        await self.otp.verify_and_consume(email, code)
        user = self.store.update_account_state(
            pending.id, verified=True, enabled=True, locked=False
        )
        if user is None:
            raise NotFoundError("account not found")
        self.accounts.invalidate(email)
        self.logger.info("account_verified", user_id=user.id)
        return self._issue_tokens(user, session_id, device)
