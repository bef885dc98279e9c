from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients switch on. Messages are human readable and may change.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication required"


class MissingTokenError(AuthenticationError):
    error_code = "MISSING_TOKEN"
    default_message = "Access token required"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"
    default_message = "Access token expired"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"
    default_message = "Invalid access token"


class TokenRevokedError(AuthenticationError):
    error_code = "TOKEN_REVOKED"
    default_message = "Token has been revoked"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class UserInactiveError(AuthenticationError):
    error_code = "USER_INACTIVE"
    default_message = "User account is inactive"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class TwoFactorRequiredError(AuthenticationError):
    """Password was correct but the account needs a second factor."""
    error_code = "TWO_FA_REQUIRED"
    default_message = "Two-factor authentication code required"


class InvalidTwoFactorTokenError(AuthenticationError):
    error_code = "INVALID_2FA_TOKEN"
    default_message = "Invalid two-factor authentication code"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "ACCOUNT_LOCKED"
    default_message = "Account temporarily locked due to too many failed login attempts"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Access denied"


class TwoFactorSetupRequiredError(ForbiddenError):
    error_code = "TWO_FA_SETUP_REQUIRED"
    default_message = "Two-factor authentication setup required for this role"


class NoRolesError(ForbiddenError):
    error_code = "NO_ROLES"
    default_message = "User has no assigned roles"


class InsufficientPermissionsError(ForbiddenError):
    error_code = "INSUFFICIENT_PERMISSIONS"
    default_message = "Insufficient permissions"


class VendorAccessRequiredError(ForbiddenError):
    error_code = "VENDOR_ACCESS_REQUIRED"
    default_message = "Vendor access required"


class TwoFactorNotEnabledError(ValidationError):
    error_code = "TWO_FA_NOT_ENABLED"
    default_message = "Two-factor authentication is not enabled"


class TwoFactorNotSetupError(ValidationError):
    error_code = "TWO_FA_NOT_SETUP"
    default_message = "Two-factor authentication has not been set up"


class InvalidVerificationTokenError(ValidationError):
    error_code = "INVALID_VERIFICATION_TOKEN"
    default_message = "Invalid or expired verification token"


class InvalidResetTokenError(ValidationError):
    error_code = "INVALID_RESET_TOKEN"
    default_message = "Invalid or expired reset token"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Not found"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Conflict"


class UserExistsError(ConflictError):
    error_code = "USER_EXISTS"
    default_message = "User with this email already exists"


class TwoFactorAlreadyEnabledError(ConflictError):
    error_code = "TWO_FA_ALREADY_ENABLED"
    default_message = "Two-factor authentication is already enabled; disable it before re-running setup"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    default_message = "Internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingTokenError",
    "TokenExpiredError",
    "InvalidTokenError",
    "TokenRevokedError",
    "InvalidRefreshTokenError",
    "UserInactiveError",
    "InvalidCredentialsError",
    "TwoFactorRequiredError",
    "InvalidTwoFactorTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "TwoFactorSetupRequiredError",
    "NoRolesError",
    "InsufficientPermissionsError",
    "VendorAccessRequiredError",
    "TwoFactorNotEnabledError",
    "TwoFactorNotSetupError",
    "InvalidVerificationTokenError",
    "InvalidResetTokenError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "UserExistsError",
    "TwoFactorAlreadyEnabledError",
    "ServerError",
]
