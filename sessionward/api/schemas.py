from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionward.service.devices import DEVICE_TYPES

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "service_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Trim, lowercase and NFKC-normalize, then check the address shape."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_session_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _validate_device_type(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized not in DEVICE_TYPES:
        raise ValueError("device_type must be 'mobile', 'desktop' or 'unknown'")
    return normalized


class DeviceFields(BaseModel):
    """Optional client description recorded with each login."""

    session_id: Optional[str] = Field(default=None, max_length=64)
    client_id: Optional[str] = Field(default=None, max_length=64)
    location: Optional[str] = Field(default=None, max_length=255)
    device_type: Optional[str] = Field(default=None, max_length=16)
    provider: Optional[str] = Field(default=None, max_length=20)

    @field_validator("session_id", "client_id")
    @classmethod
    def _strip_session_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_session_id(value)

    @field_validator("device_type")
    @classmethod
    def _normalize_device_type(cls, value: Optional[str]) -> Optional[str]:
        return _validate_device_type(value)


class LoginRequest(DeviceFields):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegistrationRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_registration_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(DeviceFields):
    email: str
    code: str = Field(..., pattern=r"^\s*\d{6}\s*$")

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class OtpResendRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)
    session_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("session_id")
    @classmethod
    def _strip_session_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_session_id(value)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("session_id")
    @classmethod
    def _strip_session_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_session_id(value)


class UserSummary(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    roles: List[str]
    email_verified: bool


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    issued_at: datetime
    refresh_expires_at: datetime
    user: UserSummary


class OtpMeta(BaseModel):
    used: int
    max: int
    cooldown: bool
    resend_interval_lock: bool
    resend_interval_seconds: int
    cooldown_seconds: int


class RegistrationResponse(BaseModel):
    user_id: str
    email: str
    otp_meta: OtpMeta


class LogoutResponse(BaseModel):
    revoked_sessions: int


class PrincipalResponse(BaseModel):
    user_id: str
    subject: str
    roles: List[str]
    token_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime


class DeviceLoginResponse(BaseModel):
    session_id: str
    provider: str
    device_type: str
    location: Optional[str] = None
    user_agent: Optional[str] = None
    last_login_at: datetime
