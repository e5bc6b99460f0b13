from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128
MAX_DISPLAY_NAME_LENGTH = 100
MAX_TOKEN_LENGTH = 4096
MAX_PAGE_SIZE = 100


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width characters

    Args:
        value: String to normalize

    Returns:
        NFKC normalized string
    """
    # Remove zero-width characters that could be used for spoofing
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # Remove RTL/LTR override characters, U+202A-U+202E and U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Validate an email address and return it normalized but case-preserved.

    Uniqueness is case-insensitive; that comparison belongs to the store.
    """
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("email must not be blank")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("password must not be blank")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_display_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_DISPLAY_NAME_LENGTH:
        raise ValueError(
            f"display_name must be at most {MAX_DISPLAY_NAME_LENGTH} characters"
        )
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("display_name")
    @classmethod
    def _validate_register_display_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class FederatedLoginRequest(BaseModel):
    """Identity asserted by an OAuth provider after a successful code exchange."""

    provider: str = Field(..., min_length=1, max_length=32)
    provider_subject_id: str = Field(..., min_length=1, max_length=255)
    email: str
    display_name: Optional[str] = None
    consent: Optional[str] = Field(default=None, max_length=16)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must not be blank")
        return normalized

    @field_validator("provider_subject_id")
    @classmethod
    def _validate_subject(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("provider subject id must not be blank")
        return value.strip()

    @field_validator("email")
    @classmethod
    def _validate_federated_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("display_name")
    @classmethod
    def _validate_federated_display_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value)


class ReauthRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_reauth_password(cls, value: str) -> str:
        return _validate_password(value)


class ActivityPageRequest(BaseModel):
    page: int = Field(default=0, ge=0)
    size: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)


class AuthResponse(BaseModel):
    account_id: int
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None

    @classmethod
    def from_tokens(cls, account, access=None, refresh=None) -> "AuthResponse":
        def _expiry(issued):
            return datetime.fromtimestamp(issued.exp, tz=timezone.utc) if issued else None

        return cls(
            account_id=account.id,
            email=account.email,
            access_token=access.token if access else None,
            refresh_token=refresh.token if refresh else None,
            access_expires_at=_expiry(access),
            refresh_expires_at=_expiry(refresh),
        )


class AccountResponse(BaseModel):
    id: int
    email: str
    display_name: Optional[str] = None
    email_verified: bool = False
    roles: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            email_verified=account.email_verified,
            roles=sorted(account.roles),
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ActivityEventResponse(BaseModel):
    id: int
    type: str
    message: Optional[str] = None
    occurred_at: datetime


class ActivityPageResponse(BaseModel):
    items: List[ActivityEventResponse]
    page: int
    size: int
    total: int

    @classmethod
    def from_page(cls, events, total: int, page: int, size: int) -> "ActivityPageResponse":
        return cls(
            items=[
                ActivityEventResponse(
                    id=e.id, type=e.type, message=e.message, occurred_at=e.occurred_at
                )
                for e in events
            ],
            page=page,
            size=size,
            total=total,
        )
