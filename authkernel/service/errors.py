from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for credential lifecycle exceptions.

    Each exception class defines both an HTTP status_code and a stable
    error_code so the outer request layer can map it without inspecting
    messages:
    - validation_error (400)
    - unauthorized (401)
    - email_not_verified (403)
    - not_found (404)
    - conflict / link_consent_required (409)
    - ticket_expired_or_used (410)
    - account_locked (423)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token is malformed, badly signed, or expired."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WrongKindError(InvalidTokenError):
    """Token verified only under the other token kind's key."""


class UnauthorizedError(AuthenticationError):
    """Token is well formed but its session is revoked or gone."""

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ServiceError):
    """Correct credentials for an account that has not confirmed its email (403)."""
    status_code = 403
    error_code = "email_not_verified"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UnknownTokenError(NotFoundError):
    """No verification ticket carries this token."""


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailTakenError(ConflictError):
    """An account with this email already exists."""


class LinkConsentRequiredError(ConflictError):
    """A federated identity matches an existing account by email only (409).

    ``detail["email"]`` carries the matched address so the caller can ask
    the user to confirm linking.
    """
    error_code = "link_consent_required"


class TicketExpiredOrUsedError(ServiceError):
    """Verification ticket was already redeemed or has expired (410)."""
    status_code = 410
    error_code = "ticket_expired_or_used"


class AccountLockedError(ServiceError):
    """Too many failed logins for this principal (423)."""
    status_code = 423
    error_code = "account_locked"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "WrongKindError",
    "UnauthorizedError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "UnknownTokenError",
    "ConflictError",
    "EmailTakenError",
    "LinkConsentRequiredError",
    "TicketExpiredOrUsedError",
    "AccountLockedError",
]
