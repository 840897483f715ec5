from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sessionward.logging import get_logger
from sessionward.service.errors import InvalidToken
from sessionward.service.keys import SigningKey
from sessionward.storage.models import utcnow

logger = get_logger(__name__)

_STANDARD_CLAIMS = frozenset({"sub", "iat", "nbf", "exp", "jti", "iss", "aud"})


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: int
    expires_at: int
    not_before: Optional[int] = None
    token_id: Optional[str] = None
    issuer: Optional[str] = None
    audience: Any = None
    extra: Mapping[str, Any] = field(default_factory=dict)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenCodec:
    """Mints and verifies compact HS256 access tokens.

    Holds no mutable state after construction, so one instance is shared by
    every request.
    """

    def __init__(
        self,
        key: SigningKey,
        *,
        validity_seconds: int,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock_skew_seconds: int = 30,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._key = key
        self.validity_seconds = validity_seconds
        self.issuer = issuer
        self.audience = audience
        self.clock_skew_seconds = clock_skew_seconds
        self._now = now_fn or utcnow

    def _epoch_now(self) -> int:
        return int(self._now().timestamp())

    def issue(self, subject: str, extra_claims: Optional[Mapping[str, Any]] = None) -> str:
        now = self._epoch_now()
        payload: dict[str, Any] = dict(extra_claims or {})
        # Standard claims always win over caller-supplied ones
        payload.update(
            {
                "sub": subject,
                "iat": now,
                "nbf": now,
                "exp": now + self.validity_seconds,
                "jti": uuid.uuid4().hex,
            }
        )
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._key.sign(signing_input.encode())
        return f"{signing_input}.{_encode_segment(signature)}"

    def _reject(self, reason: str, **fields: Any) -> InvalidToken:
        logger.info("access_token_rejected", reason=reason, **fields)
        return InvalidToken()

    def parse_and_verify(self, token: str, *, verify_time: bool = True) -> TokenClaims:
        """Verify structure, algorithm, signature, required claims and bounds.

        With ``verify_time=False`` the time bounds are skipped; callers that
        only need the expiry or id of an authentic token use that form.
        """

        if not token or not isinstance(token, str):
            raise self._reject("empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject("malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise self._reject("header_undecodable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            raise self._reject("algorithm", alg=alg)

        try:
            signature = _decode_segment(sig_b64)
        except (binascii.Error, ValueError):
            raise self._reject("signature_undecodable")
        if not self._key.verify(f"{header_b64}.{payload_b64}".encode(), signature):
            raise self._reject("signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise self._reject("payload_undecodable")
        if not isinstance(payload, dict):
            raise self._reject("payload_not_object")

        sub = payload.get("sub")
        iat = payload.get("iat")
        exp = payload.get("exp")
        nbf = payload.get("nbf")
        if not isinstance(sub, str) or not sub:
            raise self._reject("missing_sub")
        if not _is_number(iat) or not _is_number(exp):
            raise self._reject("missing_time_claims")
        if nbf is not None and not _is_number(nbf):
            raise self._reject("bad_nbf")

        if self.issuer and payload.get("iss") != self.issuer:
            raise self._reject("issuer", iss=payload.get("iss"))
        if self.audience:
            aud = payload.get("aud")
            if isinstance(aud, str):
                valid_aud = aud == self.audience
            elif isinstance(aud, list):
                valid_aud = self.audience in aud
            else:
                valid_aud = False
            if not valid_aud:
                raise self._reject("audience")

        if verify_time:
            now = self._epoch_now()
            if exp <= now - self.clock_skew_seconds:
                raise self._reject("expired", exp=int(exp))
            if nbf is not None and nbf > now + self.clock_skew_seconds:
                raise self._reject("not_yet_valid", nbf=int(nbf))

        jti = payload.get("jti")
        return TokenClaims(
            subject=sub,
            issued_at=int(iat),
            expires_at=int(exp),
            not_before=int(nbf) if nbf is not None else None,
            token_id=jti if isinstance(jti, str) and jti else None,
            issuer=payload.get("iss"),
            audience=payload.get("aud"),
            extra={k: v for k, v in payload.items() if k not in _STANDARD_CLAIMS},
        )

    def is_expired(self, token: str) -> bool:
        """``exp <= now`` with no leeway; tokens that fail to parse count as expired."""
        try:
            claims = self.parse_and_verify(token, verify_time=False)
        except InvalidToken:
            return True
        return claims.expires_at <= self._epoch_now()

    def validate_for_subject(self, token: str, expected_subject: str) -> bool:
        try:
            claims = self.parse_and_verify(token)
        except InvalidToken:
            return False
        if claims.expires_at <= self._epoch_now():
            return False
        return claims.subject == expected_subject
