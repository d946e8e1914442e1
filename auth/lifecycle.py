"""
auth/lifecycle.py -- Account activation state machine, password reset/change
and profile updates.

States (derived, see CredentialStore.account_state):
  ACTIVE                 is_active = 1
  DEACTIVATED            is_active = 0, no pending reactivation request
  PENDING_REACTIVATION   is_active = 0, one pending reactivation request

Transitions:
  ACTIVE -> DEACTIVATED             deactivate() by an administrator. Session
                                    rows stay; every authenticated request
                                    re-checks is_active, so they go dead.
  DEACTIVATED -> PENDING            verify_reactivation_code() after
                                    send_reactivation_code(), or the legacy
                                    request_reactivation().
  PENDING -> ACTIVE | DEACTIVATED   review() approve / reject. Either closes
                                    the request; a rejected user may ask again.
  DEACTIVATED|PENDING -> ACTIVE     reactivate() by an administrator directly.

Self-service password change and profile update share a cooldown measured in
whole days from the stored timestamp of the last successful change.

Outbound email goes through the Mailer collaborator. Codes and reset links
fail loudly (EmailDeliveryFailed) when delivery fails; decision emails sent
after a committed review only log the failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth import passwords
from auth.errors import (
    AlreadyActive,
    CurrentPasswordIncorrect,
    DuplicateIdentity,
    DuplicatePendingRequest,
    EmailDeliveryFailed,
    EmailNotConfigured,
    InvalidCredentials,
    InvalidOperation,
    InvalidOrExpiredToken,
    InvalidReactivationReason,
    NotFound,
    PasswordUnchanged,
    RequestAlreadyReviewed,
)
from auth.models import Identity, PasswordResetToken, ReactivationRequest, User
from auth.outbound import (
    Mailer,
    Notifier,
    password_reset_email,
    reactivation_code_email,
    reactivation_decision_email,
    redact_email,
)
from auth.store import PENDING, CredentialStore
from auth.tokens import (
    burn_password_check,
    generate_reset_token,
    generate_verification_code,
    hash_password,
    verify_password,
)
from core.config import Settings, get_settings
from core.time_utils import Clock, to_iso, utcnow

logger = logging.getLogger("coopportal.auth.lifecycle")

RESET_REQUEST_MESSAGE = "If an account with that username or email exists, a password reset link has been sent."
RESET_UNAVAILABLE_MESSAGE = "Password reset is not available for this account. Please contact your administrator."


@dataclass
class ResetRequestOutcome:
    success: bool
    message: str


@dataclass
class CodeDispatch:
    email_hint: str
    expires_in_minutes: int


def is_placeholder_email(email: str | None, placeholder_domains: list[str]) -> bool:
    if not email or "@" not in email:
        return True
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain in {d.lower() for d in placeholder_domains}


class AccountLifecycle:
    def __init__(
        self,
        store: CredentialStore,
        mailer: Mailer,
        notifier: Notifier,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _verify_identity(self, username: str, password: str) -> User:
        """Password re-check for the unauthenticated reactivation endpoints."""
        user = self.store.get_user_by_login(username)
        if user is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        return user

    def _validate_reason(self, reason: str) -> str:
        reason = (reason or "").strip()
        if len(reason) < self.settings.reactivation_reason_min_length:
            raise InvalidReactivationReason(self.settings.reactivation_reason_min_length)
        return reason

    def _notify_admins(self, user: User, request_id: int) -> None:
        for admin_id in self.store.active_user_ids_with_role(self.settings.head_admin_role):
            self.notifier.notify(
                admin_id,
                "Account Reactivation Request",
                f"{user.full_name} ({user.username}) has requested account reactivation (request #{request_id}).",
                "reactivation",
            )

    # ------------------------------------------------------------------
    # Administrative activation
    # ------------------------------------------------------------------

    def deactivate(self, user_id: int, actor: Identity) -> User:
        target = self._require_user(user_id)
        if target.id == actor.user_id:
            raise InvalidOperation("You cannot deactivate your own account.")
        if not target.is_active:
            return target
        if (
            target.role_name == self.settings.head_admin_role
            and self.store.count_active_with_role(self.settings.head_admin_role) <= 1
        ):
            raise InvalidOperation("Cannot deactivate the last active administrator account.")
        self.store.set_active(target.id, False)
        logger.info("User deactivated user_id=%s by admin_id=%s", target.id, actor.user_id)
        return self._require_user(target.id)

    def reactivate(self, user_id: int, actor: Identity) -> User:
        target = self._require_user(user_id)
        if target.is_active:
            raise AlreadyActive()
        closed = self.store.reactivate_directly(target.id, actor.user_id, self.clock())
        logger.info(
            "User reactivated user_id=%s by admin_id=%s closed_request=%s",
            target.id,
            actor.user_id,
            closed,
        )
        self.notifier.notify(target.id, "Account Reactivated", "Your account has been reactivated.", "reactivation")
        return self._require_user(target.id)

    # ------------------------------------------------------------------
    # Self-service reactivation
    # ------------------------------------------------------------------

    def send_reactivation_code(self, username: str, password: str) -> CodeDispatch:
        user = self._verify_identity(username, password)
        if user.is_active:
            raise AlreadyActive()
        if self.store.has_pending_request(user.id):
            raise DuplicatePendingRequest()
        if is_placeholder_email(user.email, self.settings.placeholder_email_domains):
            raise EmailNotConfigured()

        now = self.clock()
        ttl = self.settings.reactivation_code_ttl_minutes
        code = generate_verification_code()
        self.store.replace_reactivation_code(user.id, code, now + timedelta(minutes=ttl), now)
        sent = self.mailer.send(user.email, reactivation_code_email(user.full_name, code, ttl))
        if not sent:
            raise EmailDeliveryFailed()
        logger.info("Reactivation code sent user_id=%s to=%s", user.id, redact_email(user.email))
        return CodeDispatch(email_hint=redact_email(user.email), expires_in_minutes=ttl)

    def verify_reactivation_code(self, username: str, password: str, code: str, reason: str) -> int:
        """Consume the code and open a pending request. Returns the request id."""
        user = self._verify_identity(username, password)
        if user.is_active:
            raise AlreadyActive()
        reason = self._validate_reason(reason)
        request_id = self.store.create_reactivation_request(user.id, reason, self.clock(), code=code.strip())
        logger.info("Reactivation request opened request_id=%s user_id=%s", request_id, user.id)
        self._notify_admins(user, request_id)
        return request_id

    def request_reactivation(self, username: str, password: str, reason: str) -> int:
        """Reason-only path without an emailed code."""
        user = self._verify_identity(username, password)
        if user.is_active:
            raise AlreadyActive()
        reason = self._validate_reason(reason)
        request_id = self.store.create_reactivation_request(user.id, reason, self.clock())
        logger.info("Reactivation request opened (legacy) request_id=%s user_id=%s", request_id, user.id)
        self._notify_admins(user, request_id)
        return request_id

    # ------------------------------------------------------------------
    # Administrative review
    # ------------------------------------------------------------------

    def list_pending(self) -> list[ReactivationRequest]:
        return self.store.list_reactivation_requests(PENDING)

    def review(
        self,
        request_id: int,
        approve: bool,
        reviewer: Identity,
        notes: str | None = None,
    ) -> ReactivationRequest:
        request = self.store.get_reactivation_request(request_id)
        if request is None:
            raise NotFound("Reactivation request not found.")
        if request.status != PENDING:
            raise RequestAlreadyReviewed()
        notes = notes.strip() if notes else None

        self.store.review_request(request_id, approve, reviewer.user_id, notes, self.clock())
        logger.info(
            "Reactivation request %s %s by admin_id=%s",
            request_id,
            "approved" if approve else "rejected",
            reviewer.user_id,
        )

        title = "Account Reactivation Approved" if approve else "Account Reactivation Rejected"
        body = "Your account reactivation request has been " + ("approved." if approve else "rejected.")
        if notes:
            body += f" Notes: {notes}"
        self.notifier.notify(request.user_id, title, body, "reactivation")
        if request.email and not is_placeholder_email(request.email, self.settings.placeholder_email_domains):
            sent = self.mailer.send(request.email, reactivation_decision_email(request.full_name, approve, notes))
            if not sent:
                logger.warning("Decision email for request %s was not delivered", request_id)
        return self.store.get_reactivation_request(request_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, identifier: str) -> ResetRequestOutcome:
        """Mint (or reuse) a reset token and email the link.

        Unknown user, head-office account without a branch, and placeholder
        email all return the same unsuccessful outcome and message.
        """
        user = self.store.get_user_by_login(identifier.strip())
        if (
            user is None
            or user.branch_id is None
            or is_placeholder_email(user.email, self.settings.placeholder_email_domains)
        ):
            return ResetRequestOutcome(success=False, message=RESET_UNAVAILABLE_MESSAGE)

        now = self.clock()
        ttl = self.settings.reset_token_ttl_minutes
        existing = self.store.get_live_reset_token_for_user(user.id, now)
        if existing is not None:
            token = existing.token
        else:
            token = generate_reset_token()
            self.store.create_reset_token(
                PasswordResetToken(
                    user_id=user.id,
                    token=token,
                    expires_at=to_iso(now + timedelta(minutes=ttl)),
                    created_at=to_iso(now),
                )
            )
        reset_url = f"{self.settings.public_base_url.rstrip('/')}/reset-password?token={token}"
        if not self.mailer.send(user.email, password_reset_email(user.full_name, reset_url, ttl)):
            raise EmailDeliveryFailed()
        logger.info("Password reset link sent user_id=%s reused=%s", user.id, existing is not None)
        return ResetRequestOutcome(success=True, message=RESET_REQUEST_MESSAGE)

    def reset_password(self, token: str, new_password: str) -> None:
        now = self.clock()
        record = self.store.get_live_reset_token(token, now)
        if record is None:
            raise InvalidOrExpiredToken()
        passwords.check_strength(new_password, self.settings)
        self.store.consume_reset_token(record.id, record.user_id, hash_password(new_password), now)
        logger.info("Password reset completed user_id=%s", record.user_id)
        self.notifier.notify(
            record.user_id,
            "Password Changed",
            "Your password was changed using a reset link. Contact your administrator if this was not you.",
            "security",
        )

    # ------------------------------------------------------------------
    # Authenticated self-service
    # ------------------------------------------------------------------

    def change_password(self, identity: Identity, current_password: str, new_password: str) -> None:
        user = self._require_user(identity.user_id)
        now = self.clock()
        passwords.enforce_cooldown(
            user.last_password_change,
            self.settings.password_change_cooldown_days,
            now,
            "another password change",
        )
        if not verify_password(current_password, user.password_hash):
            raise CurrentPasswordIncorrect()
        passwords.check_strength(new_password, self.settings)
        if verify_password(new_password, user.password_hash):
            raise PasswordUnchanged()
        self.store.update_password(user.id, hash_password(new_password), now)
        logger.info("Password changed user_id=%s", user.id)
        self.notifier.notify(user.id, "Password Changed", "Your password was changed successfully.", "security")

    def update_profile(self, identity: Identity, **fields) -> User:
        """Update username, email, names or phone number under the profile cooldown."""
        user = self._require_user(identity.user_id)
        now = self.clock()
        passwords.enforce_cooldown(
            user.last_profile_update,
            self.settings.profile_update_cooldown_days,
            now,
            "another profile update",
        )
        changes = {k: v for k, v in fields.items() if v is not None}
        if not changes:
            raise InvalidOperation("No fields to update.")
        if self.store.identity_taken(changes.get("username"), changes.get("email"), exclude_user_id=user.id):
            raise DuplicateIdentity()
        self.store.update_profile(user.id, now, **changes)
        logger.info("Profile updated user_id=%s fields=%s", user.id, sorted(changes))
        return self._require_user(user.id)
