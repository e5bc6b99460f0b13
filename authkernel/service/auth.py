from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol, Set, Tuple, TypeVar
from typing import Type as TypingType

import pydantic
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger, hash_identifier
from authkernel.schemas import (
    ActivityPageRequest,
    AuthResponse,
    EmailVerificationRequest,
    FederatedLoginRequest,
    LoginRequest,
    ReauthRequest,
    RegisterRequest,
    TokenRefreshRequest,
)
from authkernel.service.audit import AuditTrail
from authkernel.service.email import EmailService
from authkernel.service.errors import (
    AccountLockedError,
    EmailNotVerifiedError,
    EmailTakenError,
    InvalidCredentialsError,
    LinkConsentRequiredError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from authkernel.service.lockout import LockoutGuard
from authkernel.service.oauth import OAuthClient
from authkernel.service.sessions import SessionRegistry
from authkernel.service.tokens import IssuedToken, TokenClaims, TokenCodec, TokenKind
from authkernel.service.verification import VerificationLedger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.kv import KeyValueStore
from authkernel.storage.models import (
    ACTIVITY_LOGIN,
    ACTIVITY_LOGOUT,
    ACTIVITY_REFRESH,
    ACTIVITY_REGISTER,
    ACTIVITY_ROLE_CHANGE,
    ACTIVITY_SOCIAL_LINK,
    ACTIVITY_VERIFY_EMAIL,
    DEFAULT_ROLES,
    UNUSABLE_PASSWORD,
    Account,
    ActivityEvent,
    SocialLink,
    VerificationTicket,
)

logger = get_logger(__name__)

_RequestModel = TypeVar("_RequestModel", bound=pydantic.BaseModel)


class CredentialStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: int) -> Optional[Account]: ...

    def add_role(self, account_id: int, role: str) -> Optional[Account]: ...

    def seed_roles(self, names: Iterable[str]) -> List[str]: ...

    def list_roles(self) -> List[str]: ...

    def create_verification_ticket(
        self, account_id: int, token: str, expires_at: datetime
    ) -> VerificationTicket: ...

    def get_verification_ticket(self, token: str) -> Optional[VerificationTicket]: ...

    def redeem_verification_ticket(
        self, token: str, now: datetime
    ) -> Optional[Account]: ...

    def create_social_link(
        self,
        account_id: int,
        provider: str,
        provider_subject_id: str,
        provider_email: Optional[str] = None,
    ) -> SocialLink: ...

    def get_account_by_social_link(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]: ...

    def record_activity(
        self, account_id: Optional[int], type: str, message: Optional[str] = None
    ) -> ActivityEvent: ...

    def list_activity(
        self, account_id: int, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ActivityEvent], int]: ...


@dataclass
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token


@dataclass
class AuthResult:
    account: Account
    tokens: Optional[TokenPair] = None

    def to_response(self) -> AuthResponse:
        if self.tokens is None:
            return AuthResponse.from_tokens(self.account)
        return AuthResponse.from_tokens(
            self.account, self.tokens.access, self.tokens.refresh
        )


@dataclass
class AuthContext:
    account_id: int
    email: str
    roles: Set[str] = field(default_factory=set)
    jti: Optional[str] = None


def _validated(model: TypingType[_RequestModel], **data) -> _RequestModel:
    """Build a request model, converting pydantic errors into ValidationError."""
    try:
        return model(**data)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False)
        first = errors[0] if errors else {}
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in errors]
        raise ValidationError(
            first.get("msg", "invalid request"), detail={"fields": fields}
        ) from None


class AuthService:
    """Registration, login, token rotation and federated login.

    Owns every cross-component invariant; the store, lockout guard, session
    registry and verification ledger never call each other.
    """

    def __init__(
        self,
        store: CredentialStore,
        kv: KeyValueStore,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        oauth: Optional[OAuthClient] = None,
        password_hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: CredentialStore = store
        self.kv = kv
        self.settings = settings
        self.clock = clock
        self.oauth = oauth
        self.codec = TokenCodec.from_settings(settings, clock=clock)
        self.sessions = SessionRegistry(kv)
        self.lockout = LockoutGuard(
            kv,
            max_failures=settings.max_failures,
            failure_window_seconds=settings.failure_window_seconds,
            lockout_seconds=settings.lockout_seconds,
        )
        self.ledger = VerificationLedger(
            store,
            email_service,
            base_url=settings.verification_base_url,
            ttl_seconds=settings.verification_ttl_seconds,
            clock=clock,
        )
        self.audit = AuditTrail(store)
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account is missing so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # -- passwords ----------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, account: Optional[Account], password: str) -> bool:
        usable = account is not None and account.has_usable_password
        stored_hash = account.password_hash if usable else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (VerifyMismatchError, InvalidHash, VerificationError):
            matched = False
        return bool(matched and usable)

    # -- tokens -------------------------------------------------------------

    async def _open_session(self, account: Account) -> TokenPair:
        pair = self._mint_pair(account)
        await self.sessions.store(
            account.id,
            pair.refresh.jti,
            pair.refresh.token,
            self.codec.ttl_seconds(TokenKind.REFRESH),
        )
        return pair

    def _mint_pair(self, account: Account) -> TokenPair:
        claims = TokenClaims(uid=account.id)
        subject = str(account.id)
        return TokenPair(
            access=self.codec.issue(TokenKind.ACCESS, subject, claims),
            refresh=self.codec.issue(TokenKind.REFRESH, subject, claims),
        )

    # -- operations ---------------------------------------------------------

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> AuthResult:
        req = _validated(
            RegisterRequest, email=email, password=password, display_name=display_name
        )
        if self.store.get_account_by_email(req.email) is not None:
            raise EmailTakenError("email already registered", detail={"field": "email"})
        try:
            account = self.store.create_account(
                req.email,
                self._hash_password(req.password),
                display_name=req.display_name,
                roles=[self.settings.default_role],
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise EmailTakenError(
                    "email already registered", detail={"field": "email"}
                ) from exc
            raise
        await self.ledger.issue(account)
        tokens = None
        if self.settings.issue_tokens_on_register:
            tokens = await self._open_session(account)
        self.audit.record(account.id, ACTIVITY_REGISTER, "registered with password")
        self.logger.info(
            "account_registered",
            account_id=account.id,
            email_hash=hash_identifier(account.email),
            tokens_issued=tokens is not None,
        )
        return AuthResult(account=account, tokens=tokens)

    async def login(self, email: str, password: str) -> AuthResult:
        req = _validated(LoginRequest, email=email, password=password)
        principal = req.email
        if await self.lockout.is_locked(principal):
            self.logger.warning(
                "login_rejected_locked", principal_hash=hash_identifier(principal)
            )
            raise AccountLockedError("account temporarily locked")
        account = self.store.get_account_by_email(req.email)
        if not self._password_matches(account, req.password):
            failures = await self.lockout.record_failure(principal)
            self.logger.info(
                "login_failed",
                principal_hash=hash_identifier(principal),
                failures=failures,
            )
            raise InvalidCredentialsError()
        if not account.email_verified:
            raise EmailNotVerifiedError(
                "email address not verified", detail={"account_id": account.id}
            )
        await self.lockout.reset_failures(principal)
        tokens = await self._open_session(account)
        self.audit.record(account.id, ACTIVITY_LOGIN, "password login")
        self.logger.info("login_succeeded", account_id=account.id)
        return AuthResult(account=account, tokens=tokens)

    async def refresh(self, refresh_token: str) -> AuthResult:
        req = _validated(TokenRefreshRequest, refresh_token=refresh_token)
        claims = self.codec.parse(TokenKind.REFRESH, req.refresh_token)
        if await self.sessions.is_revoked(claims.jti):
            self.logger.warning("refresh_rejected_revoked", account_id=claims.uid)
            raise UnauthorizedError("refresh token revoked")
        if not await self.sessions.exists(claims.uid, claims.jti):
            self.logger.warning("refresh_rejected_no_session", account_id=claims.uid)
            raise UnauthorizedError("refresh session not found")
        account = self.store.get_account(claims.uid)
        if account is None:
            raise UnauthorizedError()
        pair = self._mint_pair(account)
        # Blacklist the old jti for as long as parse would still accept it
        revoke_ttl = max(
            math.ceil(claims.exp - self.clock()) + self.codec.leeway_seconds, 1
        )
        await self.sessions.rotate(
            account.id,
            claims.jti,
            revoke_ttl,
            pair.refresh.jti,
            pair.refresh.token,
            self.codec.ttl_seconds(TokenKind.REFRESH),
        )
        self.audit.record(account.id, ACTIVITY_REFRESH, "refresh token rotated")
        self.logger.info("refresh_rotated", account_id=account.id)
        return AuthResult(account=account, tokens=pair)

    async def logout(self, refresh_token: str) -> None:
        req = _validated(TokenRefreshRequest, refresh_token=refresh_token)
        claims = self.codec.parse(TokenKind.REFRESH, req.refresh_token)
        had_session = await self.sessions.exists(claims.uid, claims.jti)
        await self.sessions.revoke(
            claims.jti,
            self.codec.ttl_seconds(TokenKind.REFRESH) + self.codec.leeway_seconds,
        )
        await self.sessions.drop(claims.uid, claims.jti)
        if had_session:
            self.audit.record(claims.uid, ACTIVITY_LOGOUT, "refresh session revoked")
            self.logger.info("logout", account_id=claims.uid)

    async def verify_email(self, token: str) -> Account:
        req = _validated(EmailVerificationRequest, token=token)
        account = self.ledger.redeem(req.token)
        self.audit.record(account.id, ACTIVITY_VERIFY_EMAIL, "email verified")
        self.logger.info("email_verified", account_id=account.id)
        return account

    async def federated_login(
        self,
        provider: str,
        provider_subject_id: str,
        email: Optional[str],
        display_name: Optional[str] = None,
        consent: Optional[str] = None,
    ) -> AuthResult:
        req = _validated(
            FederatedLoginRequest,
            provider=provider,
            provider_subject_id=provider_subject_id,
            email=email,
            display_name=display_name,
            consent=consent,
        )
        account = self.store.get_account_by_social_link(
            req.provider, req.provider_subject_id
        )
        if account is None:
            account = self._resolve_federated_account(req)
        tokens = await self._open_session(account)
        self.audit.record(account.id, ACTIVITY_LOGIN, f"federated login via {req.provider}")
        self.logger.info("federated_login_succeeded", account_id=account.id, provider=req.provider)
        return AuthResult(account=account, tokens=tokens)

    def _resolve_federated_account(self, req: FederatedLoginRequest) -> Account:
        existing = self.store.get_account_by_email(req.email)
        if existing is not None:
            if (req.consent or "").strip().lower() != "link":
                raise LinkConsentRequiredError(
                    "an account with this email already exists; retry with consent=link",
                    detail={"email": existing.email, "provider": req.provider},
                )
            self._link(existing, req)
            self.audit.record(
                existing.id, ACTIVITY_SOCIAL_LINK, f"linked {req.provider} identity"
            )
            return existing

        try:
            account = self.store.create_account(
                req.email,
                UNUSABLE_PASSWORD,
                display_name=req.display_name,
                roles=[self.settings.default_role],
                email_verified=True,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise EmailTakenError(
                    "email already registered", detail={"field": "email"}
                ) from exc
            raise
        self._link(account, req)
        self.audit.record(account.id, ACTIVITY_REGISTER, f"registered via {req.provider}")
        return account

    def _link(self, account: Account, req: FederatedLoginRequest) -> None:
        try:
            self.store.create_social_link(
                account.id, req.provider, req.provider_subject_id, req.email
            )
        except ConstraintViolation:
            # A concurrent request linked the same identity first
            linked = self.store.get_account_by_social_link(
                req.provider, req.provider_subject_id
            )
            if linked is None or linked.id != account.id:
                raise
        self.logger.info("social_link_created", account_id=account.id, provider=req.provider)

    @staticmethod
    def _oauth_state_key(state: str) -> str:
        return f"oauth_state:{state}"

    async def start_oauth(self, provider: str) -> Tuple[str, str]:
        """Issue a single-use state and return ``(authorization_url, state)``."""
        if self.oauth is None or not self.oauth.is_configured(provider):
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                "OAuth provider is not configured", detail={"provider": provider}
            )
        state = secrets.token_urlsafe(32)
        try:
            url = self.oauth.authorization_url(provider, state)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"provider": provider}) from exc
        await self.kv.set(
            self._oauth_state_key(state), provider, self.settings.oauth_state_ttl_seconds
        )
        return url, state

    async def complete_oauth(
        self, provider: str, code: str, state: str, consent: Optional[str] = None
    ) -> AuthResult:
        if self.oauth is None:
            raise ValidationError("OAuth is not configured")
        if not code or not code.strip():
            raise ValidationError("authorization code is required")
        stored_provider = await self.kv.pop(self._oauth_state_key(state)) if state else None
        if stored_provider is None or stored_provider != provider:
            self.logger.warning(
                "oauth_state_rejected",
                provider=provider,
                state_known=stored_provider is not None,
            )
            raise UnauthorizedError("invalid or expired OAuth state")
        identity = await self.oauth.exchange_code(provider, code)
        if identity is None:
            raise UnauthorizedError("OAuth exchange failed")
        return await self.federated_login(
            identity.provider,
            identity.provider_subject_id,
            identity.email,
            identity.display_name,
            consent=consent,
        )

    # -- authenticated callers ---------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("missing bearer token")
        claims = self.codec.parse(TokenKind.ACCESS, token)
        account = self.store.get_account(claims.uid)
        if account is None:
            raise UnauthorizedError()
        return AuthContext(
            account_id=account.id,
            email=account.email,
            roles=set(account.roles),
            jti=claims.jti,
        )

    async def reauthenticate(self, account_id: int, password: str) -> None:
        req = _validated(ReauthRequest, password=password)
        account = self.store.get_account(account_id)
        if not self._password_matches(account, req.password):
            self.logger.info("reauth_failed", account_id=account_id)
            raise InvalidCredentialsError()

    def get_account(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def confirm_email(self, account_id: int) -> Account:
        """Mark an address verified without a ticket, for operator tooling."""
        account = self.store.mark_email_verified(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.audit.record(account.id, ACTIVITY_VERIFY_EMAIL, "email confirmed by operator")
        self.logger.info("email_confirmed", account_id=account.id)
        return account

    def grant_role(self, account_id: int, role: str) -> Account:
        role_name = (role or "").strip().upper()
        if not role_name:
            raise ValidationError("role is required")
        try:
            account = self.store.add_role(account_id, role_name)
        except ConstraintViolation as exc:
            raise ValidationError(f"unknown role: {role_name}", detail=exc.detail) from exc
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.audit.record(account.id, ACTIVITY_ROLE_CHANGE, f"granted {role_name}")
        return account

    def list_activity(
        self, account_id: int, page: int = 0, size: int = 20
    ) -> Tuple[List[ActivityEvent], int]:
        req = _validated(ActivityPageRequest, page=page, size=size)
        self.get_account(account_id)
        return self.audit.recent(account_id, req.page, req.size)

    def seed_roles(self) -> List[str]:
        created = self.store.seed_roles(DEFAULT_ROLES)
        for name in created:
            self.logger.info("role_seeded", role=name)
        return created
