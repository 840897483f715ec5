"""Access token minting and verification."""

import base64
import json

import pytest

from sessionward.service.errors import InvalidToken
from sessionward.service.keys import SigningKey
from sessionward.service.tokens import TokenCodec


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    claims.update(changes)
    return f"{header}.{_b64(claims)}.{sig}"


class TestIssue:
    def test_round_trip_preserves_claims(self, codec, clock):
        token = codec.issue("alice@example.com", {"uid": "u-1", "roles": ["user"]})
        claims = codec.parse_and_verify(token)

        now = int(clock().timestamp())
        assert claims.subject == "alice@example.com"
        assert claims.issued_at == now
        assert claims.not_before == now
        assert claims.expires_at == now + 900
        assert claims.issuer == "https://auth.test"
        assert claims.audience == "sessionward-tests"
        assert claims.extra == {"uid": "u-1", "roles": ["user"]}
        assert claims.token_id and len(claims.token_id) == 32

    def test_standard_claims_override_caller_claims(self, codec, clock):
        token = codec.issue("alice@example.com", {"sub": "mallory", "exp": 1, "iss": "evil"})
        claims = codec.parse_and_verify(token)
        assert claims.subject == "alice@example.com"
        assert claims.expires_at > int(clock().timestamp())
        assert claims.issuer == "https://auth.test"

    def test_each_token_gets_a_fresh_jti(self, codec):
        first = codec.parse_and_verify(codec.issue("a@example.com"))
        second = codec.parse_and_verify(codec.issue("a@example.com"))
        assert first.token_id != second.token_id

    def test_header_is_hs256(self, codec):
        header = codec.issue("a@example.com").split(".")[0]
        decoded = json.loads(base64.urlsafe_b64decode(header + "=" * (-len(header) % 4)))
        assert decoded == {"alg": "HS256", "typ": "JWT"}


class TestParseAndVerify:
    def test_expired_beyond_skew_is_rejected(self, codec, clock):
        token = codec.issue("a@example.com")
        clock.advance(900 + 31)
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(token)

    def test_expiry_within_skew_still_parses(self, codec, clock):
        token = codec.issue("a@example.com")
        clock.advance(900 + 10)
        assert codec.parse_and_verify(token).subject == "a@example.com"

    def test_not_yet_valid_token_rejected(self, codec, clock):
        token = codec.issue("a@example.com")
        clock.advance(-120)
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(token)

    def test_tampered_payload_rejected(self, codec):
        token = _tamper_payload(codec.issue("a@example.com"), sub="admin@example.com")
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(token)

    def test_other_key_rejected(self, codec, clock):
        other = TokenCodec(
            SigningKey(b"x" * 32),
            validity_seconds=900,
            issuer=codec.issuer,
            audience=codec.audience,
            now_fn=clock,
        )
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(other.issue("a@example.com"))

    def test_alg_none_rejected(self, codec):
        _, payload, _ = codec.issue("a@example.com").split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(forged)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_malformed_rejected(self, codec, token):
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(token)

    def test_wrong_issuer_rejected(self, codec, signing_key, clock):
        foreign = TokenCodec(
            signing_key,
            validity_seconds=900,
            issuer="https://elsewhere",
            audience=codec.audience,
            now_fn=clock,
        )
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(foreign.issue("a@example.com"))

    def test_wrong_audience_rejected(self, codec, signing_key, clock):
        foreign = TokenCodec(
            signing_key,
            validity_seconds=900,
            issuer=codec.issuer,
            audience="another-app",
            now_fn=clock,
        )
        with pytest.raises(InvalidToken):
            codec.parse_and_verify(foreign.issue("a@example.com"))

    def test_error_message_is_generic(self, codec, clock):
        token = codec.issue("a@example.com")
        clock.advance(3600)
        with pytest.raises(InvalidToken) as excinfo:
            codec.parse_and_verify(token)
        assert excinfo.value.message == "invalid token"
        assert excinfo.value.status_code == 401


class TestExpiryHelpers:
    def test_is_expired_has_no_leeway(self, codec, clock):
        token = codec.issue("a@example.com")
        assert codec.is_expired(token) is False
        clock.advance(900)
        assert codec.is_expired(token) is True

    def test_is_expired_treats_garbage_as_expired(self, codec):
        assert codec.is_expired("garbage") is True

    def test_validate_for_subject_is_case_sensitive(self, codec):
        token = codec.issue("alice@example.com")
        assert codec.validate_for_subject(token, "alice@example.com") is True
        assert codec.validate_for_subject(token, "Alice@example.com") is False

    def test_validate_for_subject_false_once_expired(self, codec, clock):
        token = codec.issue("alice@example.com")
        clock.advance(905)
        assert codec.validate_for_subject(token, "alice@example.com") is False
