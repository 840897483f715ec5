from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    role: str = "user"
    enabled: bool = False
    locked: bool = True
    verified: bool = False
    deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_usable(self) -> bool:
        """Whether the account may log in or hold sessions."""
        return self.enabled and self.verified and not self.locked and not self.deleted


@dataclass
class RefreshTokenRecord:
    """Server-side record backing one outstanding refresh token.

    Only the SHA-256 hash of the raw token is kept. ``revoked`` only ever moves
    from False to True.
    """

    id: int
    token_hash: str
    user_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class DeviceMetadata:
    """Audit row written on every successful login."""

    id: int
    user_id: str
    session_id: str
    provider: str = "local"
    device_type: str = "unknown"
    location: Optional[str] = None
    user_agent: Optional[str] = None
    last_login_at: datetime = field(default_factory=utcnow)
