"""Unit tests for the token codec.

Tests for:
- Issuing access and refresh tokens with independent lifetimes
- Signature, algorithm and expiry checks
- Cross-kind rejection
"""

import base64
import json

import pytest

from authkernel.service.errors import InvalidTokenError, WrongKindError
from authkernel.service.tokens import TokenClaims, TokenCodec, TokenKind


@pytest.fixture
def codec(clock):
    return TokenCodec(
        access_secret="a" * 40,
        refresh_secret="r" * 40,
        access_ttl_seconds=900,
        refresh_ttl_seconds=7 * 24 * 60 * 60,
        clock=clock,
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    """Tests for token issuance."""

    def test_access_token_carries_registered_claims(self, codec, clock):
        issued = codec.issue(TokenKind.ACCESS, "7", TokenClaims(uid=7))
        payload = _payload(issued.token)

        assert payload["sub"] == "7"
        assert payload["uid"] == 7
        assert payload["typ"] == "access"
        assert payload["jti"] == issued.jti
        assert payload["iat"] == int(clock.now)
        assert payload["exp"] == int(clock.now) + 900

    def test_refresh_lifetime_is_independent(self, codec, clock):
        issued = codec.issue(TokenKind.REFRESH, "7", TokenClaims(uid=7))
        assert issued.exp - issued.iat == 7 * 24 * 60 * 60

    def test_each_token_gets_a_fresh_jti(self, codec):
        first = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        second = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        assert first.jti != second.jti

    def test_extra_claims_round_trip(self, codec):
        issued = codec.issue(
            TokenKind.ACCESS, "1", TokenClaims(uid=1, extra={"tenant": "acme"})
        )
        claims = codec.parse(TokenKind.ACCESS, issued.token)
        assert claims.extra == {"tenant": "acme"}

    def test_extra_claims_cannot_override_registered_ones(self, codec):
        with pytest.raises(ValueError):
            codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1, extra={"exp": 0}))

    def test_identical_secrets_are_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec(access_secret="x" * 40, refresh_secret="x" * 40)


class TestParse:
    """Tests for token verification."""

    def test_parse_returns_typed_claims(self, codec):
        issued = codec.issue(TokenKind.REFRESH, "42", TokenClaims(uid=42))
        claims = codec.parse(TokenKind.REFRESH, issued.token)

        assert claims.uid == 42
        assert claims.sub == "42"
        assert claims.jti == issued.jti
        assert claims.exp == issued.exp
        assert claims.kind is TokenKind.REFRESH

    def test_access_token_parsed_as_refresh_is_wrong_kind(self, codec):
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        with pytest.raises(WrongKindError):
            codec.parse(TokenKind.REFRESH, issued.token)

    def test_refresh_token_parsed_as_access_is_wrong_kind(self, codec):
        issued = codec.issue(TokenKind.REFRESH, "1", TokenClaims(uid=1))
        with pytest.raises(WrongKindError):
            codec.parse(TokenKind.ACCESS, issued.token)

    def test_forged_signature_fails(self, codec):
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        header, payload, _ = issued.token.split(".")
        forged = TokenCodec(access_secret="f" * 40, refresh_secret="g" * 40).issue(
            TokenKind.ACCESS, "1", TokenClaims(uid=1)
        )
        with pytest.raises(InvalidTokenError) as exc_info:
            codec.parse(TokenKind.ACCESS, f"{header}.{payload}.{forged.token.split('.')[2]}")
        assert not isinstance(exc_info.value, WrongKindError)

    def test_tampered_payload_fails(self, codec):
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        header, _, signature = issued.token.split(".")
        payload = _payload(issued.token)
        payload["uid"] = 2
        with pytest.raises(InvalidTokenError):
            codec.parse(TokenKind.ACCESS, f"{header}.{_b64(payload)}.{signature}")

    def test_non_hs256_header_fails(self, codec):
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        _, payload, signature = issued.token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError):
            codec.parse(TokenKind.ACCESS, f"{header}.{payload}.{signature}")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens_fail(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.parse(TokenKind.ACCESS, token)

    def test_expired_token_fails(self, codec, clock):
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        clock.advance(900)
        with pytest.raises(InvalidTokenError):
            codec.parse(TokenKind.ACCESS, issued.token)

    def test_leeway_tolerates_small_skew(self, clock):
        codec = TokenCodec(
            access_secret="a" * 40,
            refresh_secret="r" * 40,
            access_ttl_seconds=60,
            leeway_seconds=30,
            clock=clock,
        )
        issued = codec.issue(TokenKind.ACCESS, "1", TokenClaims(uid=1))
        clock.advance(75)
        assert codec.parse(TokenKind.ACCESS, issued.token).uid == 1
