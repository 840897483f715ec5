from __future__ import annotations

import base64
import binascii
import hashlib
import hmac

MIN_KEY_BYTES = 32


class SigningKeyError(RuntimeError):
    """Signing secret missing or too weak; the process must not start."""


class SigningKey:
    """Process-wide HMAC-SHA256 key material for access tokens."""

    __slots__ = ("_secret",)

    def __init__(self, secret: bytes) -> None:
        if len(secret) < MIN_KEY_BYTES:
            raise SigningKeyError(
                f"signing key must be at least {MIN_KEY_BYTES * 8} bits, got {len(secret) * 8}"
            )
        self._secret = bytes(secret)

    @classmethod
    def from_base64(cls, encoded: str | None) -> "SigningKey":
        """Decode a standard or URL-safe base64 secret.

        Raises ``SigningKeyError`` when the value is missing, not valid base64,
        or decodes to fewer than 256 bits.
        """

        if not encoded or not encoded.strip():
            raise SigningKeyError("JWT_SECRET is not configured")
        normalized = encoded.strip().replace("-", "+").replace("_", "/")
        normalized += "=" * (-len(normalized) % 4)
        try:
            secret = base64.b64decode(normalized, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SigningKeyError("JWT_SECRET is not valid base64") from exc
        return cls(secret)

    @property
    def bits(self) -> int:
        return len(self._secret) * 8

    def sign(self, message: bytes) -> bytes:
        return hmac.new(self._secret, message, hashlib.sha256).digest()

    def verify(self, message: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(message), signature)

    def __repr__(self) -> str:
        return f"SigningKey(bits={self.bits}, secret=<redacted>)"
