"""
auth/errors.py -- Failure taxonomy for sessions, tokens, lifecycle and authorization.

Status mapping:
  401 -- the caller is not authenticated (or the credential is bad/expired).
  403 -- authenticated but not allowed (role, permission, branch scope).
  4xx -- policy violations (cooldown, weak password, duplicate request).

Authentication failures never say which check failed. InvalidCredentials is
returned for an unknown user AND for a wrong password. AccountDeactivated is
only raised after the password has been verified.
"""

from __future__ import annotations

from typing import Any

from core.errors import PortalError

# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(PortalError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid username or password."


class AccountDeactivated(PortalError):
    """Raised for a deactivated account.

    identity_verified is True only on the login path, where the password was
    checked first. The login screen offers reactivation only in that case.
    """

    status_code = 401
    code = "ACCOUNT_DEACTIVATED"
    message = "Your account has been deactivated. Please contact your administrator."

    def __init__(
        self,
        identity_verified: bool = False,
        username: str | None = None,
        user_id: int | None = None,
    ) -> None:
        super().__init__()
        self.identity_verified = identity_verified
        self.username = username
        self.user_id = user_id

    def context(self) -> dict[str, Any]:
        if not self.identity_verified:
            return {"identity_verified": False}
        return {"identity_verified": True, "username": self.username, "user_id": self.user_id}


class AccountInactive(PortalError):
    status_code = 401
    code = "ACCOUNT_INACTIVE"
    message = "User account is not active."


class TooManyAttempts(PortalError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many login attempts. Please try again later."

    def __init__(self, retry_after: int) -> None:
        super().__init__()
        self.retry_after = retry_after

    def context(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after}


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenMissing(PortalError):
    status_code = 401
    code = "TOKEN_MISSING"
    message = "Access token required."


class TokenInvalid(PortalError):
    status_code = 401
    code = "TOKEN_INVALID"
    message = "Invalid or malformed token."


class TokenExpired(PortalError):
    status_code = 401
    code = "TOKEN_EXPIRED"
    message = "Token has expired."


class InvalidRefreshToken(PortalError):
    status_code = 401
    code = "INVALID_REFRESH_TOKEN"
    message = "Invalid refresh token."


class RefreshTokenExpiredOrRevoked(PortalError):
    status_code = 401
    code = "REFRESH_TOKEN_EXPIRED"
    message = "Refresh token expired or revoked."


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class RoleDenied(PortalError):
    status_code = 403
    code = "ROLE_DENIED"
    message = "Access denied for your role."

    def __init__(self, required_roles: list[str], user_role: str) -> None:
        super().__init__()
        self.required_roles = list(required_roles)
        self.user_role = user_role

    def context(self) -> dict[str, Any]:
        return {"required_roles": self.required_roles, "user_role": self.user_role}


class PermissionDenied(PortalError):
    status_code = 403
    code = "PERMISSION_DENIED"
    message = "Insufficient permissions."

    def __init__(self, required: str, user_permissions: list[str]) -> None:
        super().__init__()
        self.required = required
        self.user_permissions = list(user_permissions)

    def context(self) -> dict[str, Any]:
        return {"required": self.required, "user_permissions": self.user_permissions}


class BranchAccessDenied(PortalError):
    status_code = 403
    code = "BRANCH_ACCESS_DENIED"
    message = "Access denied to this branch."

    def __init__(self, user_branch: int | None, requested_branch: int | None) -> None:
        super().__init__()
        self.user_branch = user_branch
        self.requested_branch = requested_branch

    def context(self) -> dict[str, Any]:
        return {"user_branch": self.user_branch, "requested_branch": self.requested_branch}


# ---------------------------------------------------------------------------
# Passwords and profile
# ---------------------------------------------------------------------------


class CooldownActive(PortalError):
    status_code = 429
    code = "COOLDOWN_ACTIVE"

    def __init__(self, days_remaining: int, action: str = "this change") -> None:
        unit = "day" if days_remaining == 1 else "days"
        super().__init__(f"You can make {action} again in {days_remaining} {unit}.")
        self.days_remaining = days_remaining

    def context(self) -> dict[str, Any]:
        return {"days_remaining": self.days_remaining}


class WeakPassword(PortalError):
    code = "WEAK_PASSWORD"

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(message)
        self.rule = rule

    def context(self) -> dict[str, Any]:
        return {"rule": self.rule}


class PasswordUnchanged(PortalError):
    code = "PASSWORD_UNCHANGED"
    message = "New password must be different from the current password."


class CurrentPasswordIncorrect(PortalError):
    code = "CURRENT_PASSWORD_INCORRECT"
    message = "Current password is incorrect."


class DuplicateIdentity(PortalError):
    status_code = 409
    code = "DUPLICATE_IDENTITY"
    message = "Username or email already exists."


# ---------------------------------------------------------------------------
# Reactivation and reset
# ---------------------------------------------------------------------------


class AlreadyActive(PortalError):
    code = "ALREADY_ACTIVE"
    message = "Account is already active."


class DuplicatePendingRequest(PortalError):
    status_code = 409
    code = "DUPLICATE_PENDING_REQUEST"
    message = "A reactivation request is already pending for this account."


class EmailNotConfigured(PortalError):
    code = "EMAIL_NOT_CONFIGURED"
    message = "No valid email address is configured for this account. Please contact your administrator."


class InvalidOrExpiredToken(PortalError):
    code = "INVALID_OR_EXPIRED_TOKEN"
    message = "Invalid or expired reset token."


class InvalidOrExpiredCode(InvalidOrExpiredToken):
    code = "INVALID_OR_EXPIRED_CODE"
    message = "Invalid or expired verification code."


class InvalidReactivationReason(PortalError):
    code = "INVALID_REASON"

    def __init__(self, min_length: int) -> None:
        super().__init__(f"Please provide a reason of at least {min_length} characters.")
        self.min_length = min_length

    def context(self) -> dict[str, Any]:
        return {"min_length": self.min_length}


class RequestAlreadyReviewed(PortalError):
    status_code = 409
    code = "REQUEST_ALREADY_REVIEWED"
    message = "This reactivation request has already been reviewed."


class EmailDeliveryFailed(PortalError):
    status_code = 502
    code = "EMAIL_DELIVERY_FAILED"
    message = "Failed to send email. Please try again later."


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class NotFound(PortalError):
    """Used for "not found or not permitted" alike."""

    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class InvalidOperation(PortalError):
    code = "INVALID_OPERATION"


class InvalidRegistration(PortalError):
    code = "INVALID_REGISTRATION"

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index

    def context(self) -> dict[str, Any]:
        return {} if self.index is None else {"index": self.index}
