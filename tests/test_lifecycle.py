"""
tests/test_lifecycle.py -- Unit tests for AccountLifecycle.

Covers:
  - administrative deactivate / reactivate guards (self, last head admin)
  - reactivation code flow: single live code, expiry, reason length,
    pending-request uniqueness, admin notification
  - review: approve reactivates, reject unblocks a new request, second
    review refused
  - password reset: uniform failure outcome, token reuse, single use, expiry
  - change password / update profile cooldowns
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from auth import schema
from auth.errors import (
    AlreadyActive,
    CooldownActive,
    CurrentPasswordIncorrect,
    DuplicateIdentity,
    DuplicatePendingRequest,
    EmailDeliveryFailed,
    EmailNotConfigured,
    InvalidCredentials,
    InvalidOperation,
    InvalidOrExpiredCode,
    InvalidOrExpiredToken,
    InvalidReactivationReason,
    NotFound,
    PasswordUnchanged,
    RequestAlreadyReviewed,
    WeakPassword,
)
from auth.lifecycle import RESET_REQUEST_MESSAGE, RESET_UNAVAILABLE_MESSAGE, AccountLifecycle, is_placeholder_email
from auth.models import AccountState, Identity
from auth.tokens import verify_password
from conftest import PASSWORD, add_user
from core.config import get_settings
from core.database import connect

NEW_PASSWORD = "N3w-Passw0rd!"
REASON = "I am back from extended leave."


@pytest.fixture
def lifecycle(store, mailer, notifier, clock) -> AccountLifecycle:
    return AccountLifecycle(store, mailer, notifier, get_settings(), clock=clock)


def _identity(store, user) -> Identity:
    fresh = store.get_user_by_id(user.id)
    return Identity(user=fresh, permissions=store.permissions_for_role(fresh.role_id))


def _latest_code(store, user_id: int) -> str:
    c = schema.reactivation_codes
    with connect(store.engine) as conn:
        return conn.execute(select(c.c.code).where(c.c.user_id == user_id).order_by(c.c.id.desc())).scalar()


def _latest_reset_token(store, user_id: int) -> str:
    t = schema.password_reset_tokens
    with connect(store.engine) as conn:
        return conn.execute(select(t.c.token).where(t.c.user_id == user_id).order_by(t.c.id.desc())).scalar()


# ---------------------------------------------------------------------------
# Administrative activation
# ---------------------------------------------------------------------------


class TestDeactivate:
    def test_admin_deactivates_user(self, lifecycle, store, seeded) -> None:
        user = lifecycle.deactivate(seeded.clerk.id, _identity(store, seeded.admin))
        assert user.is_active is False
        assert store.account_state(user) is AccountState.DEACTIVATED

    def test_cannot_deactivate_self(self, lifecycle, store, seeded) -> None:
        with pytest.raises(InvalidOperation):
            lifecycle.deactivate(seeded.admin.id, _identity(store, seeded.admin))

    def test_cannot_deactivate_last_head_admin(self, lifecycle, store, seeded) -> None:
        with pytest.raises(InvalidOperation) as exc_info:
            lifecycle.deactivate(seeded.admin.id, _identity(store, seeded.main_clerk))
        assert "last active administrator" in exc_info.value.message

    def test_second_head_admin_can_be_deactivated(self, lifecycle, store, seeded) -> None:
        other = add_user(store, "ithead2", "it_head", seeded.main.id)
        assert lifecycle.deactivate(other.id, _identity(store, seeded.admin)).is_active is False

    def test_deactivating_inactive_user_is_a_no_op(self, lifecycle, store, seeded) -> None:
        assert lifecycle.deactivate(seeded.inactive.id, _identity(store, seeded.admin)).is_active is False

    def test_unknown_user(self, lifecycle, store, seeded) -> None:
        with pytest.raises(NotFound):
            lifecycle.deactivate(9999, _identity(store, seeded.admin))


class TestDirectReactivate:
    def test_reactivate_closes_pending_request(self, lifecycle, store, seeded, notifier) -> None:
        request_id = lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        user = lifecycle.reactivate(seeded.inactive.id, _identity(store, seeded.admin))
        assert user.is_active is True
        assert store.get_reactivation_request(request_id).status == "approved"
        assert "Account Reactivated" in notifier.titles_for(seeded.inactive.id)

    def test_reactivate_active_user(self, lifecycle, store, seeded) -> None:
        with pytest.raises(AlreadyActive):
            lifecycle.reactivate(seeded.clerk.id, _identity(store, seeded.admin))


# ---------------------------------------------------------------------------
# Self-service reactivation
# ---------------------------------------------------------------------------


class TestReactivationCodes:
    def test_send_code_emails_the_user(self, lifecycle, store, seeded, mailer) -> None:
        dispatch = lifecycle.send_reactivation_code("rfinance", PASSWORD)
        assert dispatch.expires_in_minutes == get_settings().reactivation_code_ttl_minutes
        assert "***@" in dispatch.email_hint
        to_email, message = mailer.sent[-1]
        assert to_email == seeded.inactive.email
        assert _latest_code(store, seeded.inactive.id) in message.text_body

    def test_wrong_password(self, lifecycle, seeded) -> None:
        with pytest.raises(InvalidCredentials):
            lifecycle.send_reactivation_code("rfinance", "nope")

    def test_active_account(self, lifecycle, seeded) -> None:
        with pytest.raises(AlreadyActive):
            lifecycle.send_reactivation_code("rclerk", PASSWORD)

    def test_placeholder_email(self, lifecycle, store, seeded) -> None:
        add_user(store, "ghost", "marketing_clerk", seeded.branch.id, active=False, email="ghost@example.com")
        with pytest.raises(EmailNotConfigured):
            lifecycle.send_reactivation_code("ghost", PASSWORD)

    def test_delivery_failure(self, lifecycle, seeded, mailer) -> None:
        mailer.fail = True
        with pytest.raises(EmailDeliveryFailed):
            lifecycle.send_reactivation_code("rfinance", PASSWORD)

    def test_new_code_invalidates_previous(self, lifecycle, store, seeded) -> None:
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        first = _latest_code(store, seeded.inactive.id)
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        second = _latest_code(store, seeded.inactive.id)
        if first == second:
            pytest.skip("random codes collided")
        with pytest.raises(InvalidOrExpiredCode):
            lifecycle.verify_reactivation_code("rfinance", PASSWORD, first, REASON)
        assert lifecycle.verify_reactivation_code("rfinance", PASSWORD, second, REASON) > 0

    def test_code_expires(self, lifecycle, store, seeded, clock) -> None:
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        code = _latest_code(store, seeded.inactive.id)
        clock.advance(minutes=16)
        with pytest.raises(InvalidOrExpiredCode):
            lifecycle.verify_reactivation_code("rfinance", PASSWORD, code, REASON)

    def test_code_is_single_use(self, lifecycle, store, seeded) -> None:
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        code = _latest_code(store, seeded.inactive.id)
        request_id = lifecycle.verify_reactivation_code("rfinance", PASSWORD, code, REASON)
        lifecycle.review(request_id, False, _identity(store, seeded.admin))
        with pytest.raises(InvalidOrExpiredCode):
            lifecycle.verify_reactivation_code("rfinance", PASSWORD, code, REASON)

    def test_short_reason_keeps_code(self, lifecycle, store, seeded) -> None:
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        code = _latest_code(store, seeded.inactive.id)
        with pytest.raises(InvalidReactivationReason):
            lifecycle.verify_reactivation_code("rfinance", PASSWORD, code, "pls")
        assert lifecycle.verify_reactivation_code("rfinance", PASSWORD, code, REASON) > 0

    def test_verified_code_opens_request_and_notifies_admins(self, lifecycle, store, seeded, notifier) -> None:
        lifecycle.send_reactivation_code("rfinance", PASSWORD)
        request_id = lifecycle.verify_reactivation_code(
            "rfinance", PASSWORD, _latest_code(store, seeded.inactive.id), REASON
        )
        request = store.get_reactivation_request(request_id)
        assert request.status == "pending"
        assert request.reason == REASON
        assert store.account_state(store.get_user_by_id(seeded.inactive.id)) is AccountState.PENDING_REACTIVATION
        assert "Account Reactivation Request" in notifier.titles_for(seeded.admin.id)


class TestPendingRequests:
    def test_pending_request_blocks_another(self, lifecycle, seeded) -> None:
        lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        with pytest.raises(DuplicatePendingRequest):
            lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        with pytest.raises(DuplicatePendingRequest):
            lifecycle.send_reactivation_code("rfinance", PASSWORD)

    def test_rejection_unblocks_new_request(self, lifecycle, store, seeded, notifier, mailer) -> None:
        request_id = lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        reviewed = lifecycle.review(request_id, False, _identity(store, seeded.admin), "Talk to HR first")
        assert reviewed.status == "rejected"
        assert reviewed.review_notes == "Talk to HR first"
        assert store.get_user_by_id(seeded.inactive.id).is_active is False
        assert "Account Reactivation Rejected" in notifier.titles_for(seeded.inactive.id)
        assert mailer.last.subject.endswith("Rejected")
        assert lifecycle.request_reactivation("rfinance", PASSWORD, REASON) != request_id

    def test_approval_reactivates(self, lifecycle, store, seeded) -> None:
        request_id = lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        lifecycle.review(request_id, True, _identity(store, seeded.admin))
        assert store.get_user_by_id(seeded.inactive.id).is_active is True

    def test_second_review_is_refused(self, lifecycle, store, seeded) -> None:
        request_id = lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        lifecycle.review(request_id, True, _identity(store, seeded.admin))
        with pytest.raises(RequestAlreadyReviewed):
            lifecycle.review(request_id, False, _identity(store, seeded.admin))

    def test_decision_email_failure_does_not_undo_review(self, lifecycle, store, seeded, mailer) -> None:
        request_id = lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        mailer.fail = True
        assert lifecycle.review(request_id, True, _identity(store, seeded.admin)).status == "approved"

    def test_unknown_request(self, lifecycle, store, seeded) -> None:
        with pytest.raises(NotFound):
            lifecycle.review(4242, True, _identity(store, seeded.admin))

    def test_list_pending(self, lifecycle, seeded) -> None:
        lifecycle.request_reactivation("rfinance", PASSWORD, REASON)
        pending = lifecycle.list_pending()
        assert [r.username for r in pending] == ["rfinance"]
        assert pending[0].branch_name == seeded.branch.name


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_request_sends_link(self, lifecycle, store, seeded, mailer) -> None:
        outcome = lifecycle.request_password_reset("rclerk")
        assert outcome.success is True
        assert outcome.message == RESET_REQUEST_MESSAGE
        token = _latest_reset_token(store, seeded.clerk.id)
        assert f"token={token}" in mailer.last.text_body

    def test_live_token_is_reused(self, lifecycle, store, seeded) -> None:
        lifecycle.request_password_reset("rclerk")
        first = _latest_reset_token(store, seeded.clerk.id)
        lifecycle.request_password_reset(seeded.clerk.email)
        assert _latest_reset_token(store, seeded.clerk.id) == first

    def test_uniform_failure_outcome(self, lifecycle, store, seeded) -> None:
        add_user(store, "hq", "it_head", None)
        add_user(store, "stub", "marketing_clerk", seeded.branch.id, email="stub@placeholder.local")
        outcomes = [lifecycle.request_password_reset(who) for who in ("nobody", "hq", "stub")]
        assert {(o.success, o.message) for o in outcomes} == {(False, RESET_UNAVAILABLE_MESSAGE)}

    def test_delivery_failure(self, lifecycle, seeded, mailer) -> None:
        mailer.fail = True
        with pytest.raises(EmailDeliveryFailed):
            lifecycle.request_password_reset("rclerk")

    def test_reset_sets_password_once(self, lifecycle, store, seeded, notifier) -> None:
        lifecycle.request_password_reset("rclerk")
        token = _latest_reset_token(store, seeded.clerk.id)
        lifecycle.reset_password(token, NEW_PASSWORD)
        user = store.get_user_by_id(seeded.clerk.id)
        assert verify_password(NEW_PASSWORD, user.password_hash)
        assert user.last_password_change is not None
        assert "Password Changed" in notifier.titles_for(seeded.clerk.id)
        with pytest.raises(InvalidOrExpiredToken):
            lifecycle.reset_password(token, "An0ther-pass!")

    def test_weak_password_keeps_token(self, lifecycle, store, seeded) -> None:
        lifecycle.request_password_reset("rclerk")
        token = _latest_reset_token(store, seeded.clerk.id)
        with pytest.raises(WeakPassword):
            lifecycle.reset_password(token, "short")
        lifecycle.reset_password(token, NEW_PASSWORD)

    def test_expired_token(self, lifecycle, store, seeded, clock) -> None:
        lifecycle.request_password_reset("rclerk")
        token = _latest_reset_token(store, seeded.clerk.id)
        clock.advance(minutes=61)
        with pytest.raises(InvalidOrExpiredToken):
            lifecycle.reset_password(token, NEW_PASSWORD)


# ---------------------------------------------------------------------------
# Authenticated self-service
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_cooldown_between_changes(self, lifecycle, store, seeded, clock) -> None:
        lifecycle.change_password(_identity(store, seeded.clerk), PASSWORD, NEW_PASSWORD)
        clock.advance(days=10)
        with pytest.raises(CooldownActive) as exc_info:
            lifecycle.change_password(_identity(store, seeded.clerk), NEW_PASSWORD, "Th1rd-pass!")
        assert exc_info.value.days_remaining == 20
        assert exc_info.value.status_code == 429
        clock.advance(days=21)
        lifecycle.change_password(_identity(store, seeded.clerk), NEW_PASSWORD, "Th1rd-pass!")

    def test_wrong_current_password(self, lifecycle, store, seeded) -> None:
        with pytest.raises(CurrentPasswordIncorrect):
            lifecycle.change_password(_identity(store, seeded.clerk), "nope", NEW_PASSWORD)

    def test_weak_new_password(self, lifecycle, store, seeded) -> None:
        with pytest.raises(WeakPassword) as exc_info:
            lifecycle.change_password(_identity(store, seeded.clerk), PASSWORD, "alllowercase1!")
        assert exc_info.value.rule == "uppercase"

    def test_same_password(self, lifecycle, store, seeded) -> None:
        with pytest.raises(PasswordUnchanged):
            lifecycle.change_password(_identity(store, seeded.clerk), PASSWORD, PASSWORD)


class TestUpdateProfile:
    def test_cooldown_between_updates(self, lifecycle, store, seeded, clock) -> None:
        user = lifecycle.update_profile(_identity(store, seeded.clerk), first_name="Rosalind")
        assert user.first_name == "Rosalind"
        with pytest.raises(CooldownActive):
            lifecycle.update_profile(_identity(store, seeded.clerk), last_name="Again")
        clock.advance(days=30)
        assert lifecycle.update_profile(_identity(store, seeded.clerk), last_name="Again").last_name == "Again"

    def test_duplicate_username(self, lifecycle, store, seeded) -> None:
        with pytest.raises(DuplicateIdentity):
            lifecycle.update_profile(_identity(store, seeded.clerk), username="mclerk")

    def test_no_fields(self, lifecycle, store, seeded) -> None:
        with pytest.raises(InvalidOperation):
            lifecycle.update_profile(_identity(store, seeded.clerk), username=None)


def test_placeholder_email_detection() -> None:
    domains = ["example.com"]
    assert is_placeholder_email(None, domains)
    assert is_placeholder_email("no-at-sign", domains)
    assert is_placeholder_email("x@EXAMPLE.com", domains)
    assert not is_placeholder_email("x@imvcmpc.coop", domains)
