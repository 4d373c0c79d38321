from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Wrong password or unknown identity; never says which."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenType(InvalidToken):
    def __init__(self, message: str = "invalid token type", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(InvalidToken):
    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimited(ServiceError):
    """Too many attempts (429).

    ``retry_after`` is for internal callers only and is never rendered.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "too many attempts, try again later", *, retry_after: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PolicyViolation(ServiceError):
    """Password/email/username format or change policy not met (400)."""
    status_code = 400
    error_code = "validation_error"


class CooldownActive(PolicyViolation):
    def __init__(self, field: str, days_remaining: int) -> None:
        super().__init__(
            f"{field} was changed recently; try again in {days_remaining} days",
            detail={"field": field, "days_remaining": days_remaining},
        )
        self.field = field
        self.days_remaining = days_remaining


class TwoFactorSetupNotStarted(PolicyViolation):
    def __init__(self, message: str = "two factor setup not started", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorAlreadyEnabled(PolicyViolation):
    def __init__(self, message: str = "two factor is already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorNotEnabled(PolicyViolation):
    def __init__(self, message: str = "two factor is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCode(PolicyViolation):
    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RecoveryCodesUnavailable(PolicyViolation):
    def __init__(self, message: str = "recovery authentication not available", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Infrastructure fault: cache/store unreachable, signing failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "InvalidTokenType",
    "TokenExpired",
    "RateLimited",
    "PolicyViolation",
    "CooldownActive",
    "TwoFactorSetupNotStarted",
    "TwoFactorAlreadyEnabled",
    "TwoFactorNotEnabled",
    "InvalidTwoFactorCode",
    "RecoveryCodesUnavailable",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
