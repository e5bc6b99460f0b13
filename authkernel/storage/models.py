from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Set

ROLE_USER = "USER"
ROLE_MANAGER = "MANAGER"
ROLE_ADMIN = "ADMIN"
DEFAULT_ROLES = (ROLE_USER, ROLE_MANAGER, ROLE_ADMIN)

# Activity event types
ACTIVITY_REGISTER = "REGISTER"
ACTIVITY_LOGIN = "LOGIN"
ACTIVITY_REFRESH = "REFRESH"
ACTIVITY_LOGOUT = "LOGOUT"
ACTIVITY_VERIFY_EMAIL = "VERIFY_EMAIL"
ACTIVITY_SOCIAL_LINK = "SOCIAL_LINK"
ACTIVITY_ROLE_CHANGE = "ROLE_CHANGE"

# Stored in place of a hash for accounts created through a federated login.
# Never a valid argon2 encoding, so every password check against it fails.
UNUSABLE_PASSWORD = "!unusable"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    email: str
    password_hash: Optional[str] = field(default=None, repr=False)
    email_verified: bool = False
    display_name: Optional[str] = None
    roles: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_usable_password(self) -> bool:
        return bool(self.password_hash) and self.password_hash != UNUSABLE_PASSWORD


@dataclass
class VerificationTicket:
    id: int
    account_id: int
    token: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class SocialLink:
    id: int
    account_id: int
    provider: str
    provider_subject_id: str
    provider_email: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivityEvent:
    id: int
    account_id: Optional[int]
    type: str
    message: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
