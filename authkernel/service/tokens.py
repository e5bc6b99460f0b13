from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import InvalidTokenError, WrongKindError

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"iss", "sub", "uid", "jti", "iat", "exp", "typ"})


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"

    @property
    def other(self) -> "TokenKind":
        return TokenKind.REFRESH if self is TokenKind.ACCESS else TokenKind.ACCESS


@dataclass
class TokenClaims:
    """Typed token body.

    Callers fill ``uid`` and optionally ``extra`` when issuing; the registered
    fields are populated by :meth:`TokenCodec.parse`.
    """

    uid: int
    extra: Dict[str, Any] = field(default_factory=dict)
    sub: Optional[str] = None
    jti: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    kind: Optional[TokenKind] = None


@dataclass
class IssuedToken:
    token: str
    jti: str
    iat: int
    exp: int
    kind: TokenKind


class TokenCodec:
    """HS256 compact tokens with an independent key and lifetime per kind."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        issuer: str = "authkernel",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: access_ttl_seconds,
            TokenKind.REFRESH: refresh_ttl_seconds,
        }
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.token_issuer,
            leeway_seconds=settings.token_leeway_seconds,
            clock=clock,
        )

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._ttls[TokenKind(kind)]

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: TokenKind, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, kind: TokenKind, subject: str, claims: TokenClaims) -> IssuedToken:
        kind = TokenKind(kind)
        clashing = _RESERVED_CLAIMS.intersection(claims.extra)
        if clashing:
            raise ValueError(f"extra claims may not override {sorted(clashing)}")
        iat = int(self.clock())
        exp = iat + self._ttls[kind]
        jti = str(uuid.uuid4())
        payload = {
            **claims.extra,
            "iss": self.issuer,
            "sub": subject,
            "uid": claims.uid,
            "jti": jti,
            "iat": iat,
            "exp": exp,
            "typ": kind.value,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(kind, signing_input)}"
        return IssuedToken(token=token, jti=jti, iat=iat, exp=exp, kind=kind)

    def parse(self, kind: TokenKind, token: str) -> TokenClaims:
        """Verify ``token`` as ``kind`` and return its claims.

        Raises WrongKindError when the signature only matches the other
        kind's key, InvalidTokenError for every other failure.
        """
        kind = TokenKind(kind)
        if not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        # Validate header algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(kind, signing_input), sig_b64):
            if hmac.compare_digest(self._sign(kind.other, signing_input), sig_b64):
                logger.warning("token_wrong_kind", expected=kind.value)
                raise WrongKindError()
            raise InvalidTokenError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("typ") != kind.value or payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        try:
            uid = int(payload["uid"])
            exp = int(payload["exp"])
            iat = int(payload["iat"])
            jti = str(payload["jti"])
            sub = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if exp <= self.clock() - self.leeway_seconds:
            raise InvalidTokenError("token expired")
        extra = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        return TokenClaims(
            uid=uid, extra=extra, sub=sub, jti=jti, iat=iat, exp=exp, kind=kind
        )
