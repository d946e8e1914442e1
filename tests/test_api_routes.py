"""
tests/test_api_routes.py -- HTTP-level tests for the v1 routers.

Covers:
  - login / refresh / logout / profile round trip, no-store on login
  - deactivated login: 401 ACCOUNT_DEACTIVATED with identity_verified=true
  - forgot / reset password over HTTP, uniform 400 for unusable accounts
  - reactivation code flow and admin review, with the decision recorded as
    approve_reactivation_request
  - user administration: list, branch-user registration, deactivate /
    reactivate with the affected user captured in the audit entry
  - audit log list / summary / CSV export / detail
  - validation errors use the shared error envelope
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from audit.store import AuditQuery
from auth import schema
from conftest import PASSWORD, add_user
from core.database import connect

NEW_PASSWORD = "N3w-Passw0rd!"
REASON = "I am back from extended leave."


def _login(portal, username: str, password: str = PASSWORD):
    return portal.client.post("/api/v1/auth/login", json={"username": username, "password": password})


def _audit_actions(portal) -> list[str]:
    portal.flush_audit()
    entries, _ = portal.client.app.state.audit_store.query(AuditQuery())
    return [e.action for e in entries]


def _latest_entry(portal, action: str):
    portal.flush_audit()
    entries, _ = portal.client.app.state.audit_store.query(AuditQuery(event_type=action))
    return entries[0]


def _latest(portal, table, user_id: int, column: str) -> str:
    with connect(portal.store.engine) as conn:
        return conn.execute(
            select(table.c[column]).where(table.c.user_id == user_id).order_by(table.c.id.desc())
        ).scalar()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_login_returns_tokens_and_profile(self, portal) -> None:
        resp = _login(portal, "rclerk")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["username"] == "rclerk"
        assert data["user"]["branch"]["location"] == "ROSARIO"
        assert "read:member_data" in data["permissions"]

    def test_login_is_audited_with_actor(self, portal) -> None:
        _login(portal, "rclerk")
        entry = _latest_entry(portal, "login")
        assert entry.user_id == portal.users.clerk.id
        assert entry.status == "success"
        assert entry.details["body"]["password"] == "[REDACTED]"

    def test_bad_password(self, portal) -> None:
        resp = _login(portal, "rclerk", "Wrong-passw0rd")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert _latest_entry(portal, "login").status == "failed"

    def test_deactivated_login(self, portal) -> None:
        resp = _login(portal, "rfinance")
        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "ACCOUNT_DEACTIVATED"
        assert error["context"]["identity_verified"] is True

    def test_refresh_and_logout(self, portal) -> None:
        tokens = _login(portal, "rclerk").json()
        refreshed = portal.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        headers = {"Authorization": f"Bearer {refreshed.json()['access_token']}"}

        out = portal.client.post(
            "/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}, headers=headers
        )
        assert out.status_code == 200

        again = portal.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "REFRESH_TOKEN_EXPIRED"
        assert "logout" in _audit_actions(portal)

    def test_profile(self, portal) -> None:
        data = portal.client.get("/api/v1/auth/profile", headers=portal.auth(portal.users.clerk)).json()
        assert data["user"]["id"] == portal.users.clerk.id
        assert data["user"]["is_main_branch"] is False

    def test_validation_error_envelope(self, portal) -> None:
        resp = portal.client.post("/api/v1/auth/login", json={})
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class TestSelfService:
    def test_change_password_cooldown(self, portal) -> None:
        headers = portal.auth(portal.users.clerk)
        body = {"current_password": PASSWORD, "new_password": NEW_PASSWORD}
        assert portal.client.put("/api/v1/auth/change-password", json=body, headers=headers).status_code == 200
        assert _login(portal, "rclerk", NEW_PASSWORD).status_code == 200

        again = {"current_password": NEW_PASSWORD, "new_password": "An0ther-Passw0rd!"}
        resp = portal.client.put("/api/v1/auth/change-password", json=again, headers=headers)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "COOLDOWN_ACTIVE"

    def test_update_profile(self, portal) -> None:
        resp = portal.client.put(
            "/api/v1/auth/update-profile",
            json={"first_name": "Rosalind"},
            headers=portal.auth(portal.users.clerk),
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["first_name"] == "Rosalind"
        assert _latest_entry(portal, "update_profile").details["updated_fields"] == ["first_name"]

    def test_update_profile_duplicate_username(self, portal) -> None:
        resp = portal.client.put(
            "/api/v1/auth/update-profile",
            json={"username": "mclerk"},
            headers=portal.auth(portal.users.clerk),
        )
        assert resp.status_code == 409

    def test_forgot_and_reset_password(self, portal) -> None:
        resp = portal.client.post("/api/v1/auth/forgot-password", json={"identifier": "rclerk"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert len(portal.mailer.sent) == 1

        token = _latest(portal, schema.password_reset_tokens, portal.users.clerk.id, "token")
        reset = portal.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert reset.status_code == 200
        assert _login(portal, "rclerk", NEW_PASSWORD).status_code == 200

        reuse = portal.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert reuse.status_code == 400
        assert reuse.json()["error"]["code"] == "INVALID_OR_EXPIRED_TOKEN"

    def test_forgot_password_unusable_accounts_are_uniform_400(self, portal) -> None:
        add_user(portal.store, "noinbox", "marketing_clerk", portal.users.branch.id, email="noinbox@example.com")
        nobody = portal.client.post("/api/v1/auth/forgot-password", json={"identifier": "nobody"})
        placeholder = portal.client.post("/api/v1/auth/forgot-password", json={"identifier": "noinbox"})
        assert nobody.status_code == placeholder.status_code == 400
        assert nobody.json() == placeholder.json()
        assert portal.mailer.sent == []


# ---------------------------------------------------------------------------
# Reactivation
# ---------------------------------------------------------------------------


class TestReactivation:
    def test_code_flow_and_approval(self, portal) -> None:
        creds = {"username": "rfinance", "password": PASSWORD}
        sent = portal.client.post("/api/v1/auth/send-reactivation-code", json=creds)
        assert sent.status_code == 200
        assert sent.json()["expires_in_minutes"] == 15
        assert "@" in sent.json()["email_hint"]

        code = _latest(portal, schema.reactivation_codes, portal.users.inactive.id, "code")
        verified = portal.client.post(
            "/api/v1/auth/verify-reactivation-code", json={**creds, "code": code, "reason": REASON}
        )
        assert verified.status_code == 201
        request_id = verified.json()["request_id"]

        admin = portal.auth(portal.users.admin)
        pending = portal.client.get("/api/v1/auth/reactivation-requests", headers=admin).json()["requests"]
        assert [r["id"] for r in pending] == [request_id]

        review = portal.client.put(
            f"/api/v1/auth/reactivation-requests/{request_id}",
            json={"action": "approve", "notes": "Welcome back"},
            headers=admin,
        )
        assert review.status_code == 200
        assert review.json()["request"]["status"] == "approved"
        assert _login(portal, "rfinance").status_code == 200

        entry = _latest_entry(portal, "approve_reactivation_request")
        assert entry.details["decision"] == "approve"
        assert entry.details["affected_user"]["username"] == "rfinance"
        assert "review_reactivation_request" not in _audit_actions(portal)

    def test_request_without_code_then_duplicate(self, portal) -> None:
        body = {"username": "rfinance", "password": PASSWORD, "reason": REASON}
        assert portal.client.post("/api/v1/auth/request-reactivation", json=body).status_code == 201
        dup = portal.client.post("/api/v1/auth/request-reactivation", json=body)
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "DUPLICATE_PENDING_REQUEST"

    def test_review_requires_admin(self, portal) -> None:
        resp = portal.client.get("/api/v1/auth/reactivation-requests", headers=portal.auth(portal.users.clerk))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class TestAccounts:
    def test_list_users_with_state(self, portal) -> None:
        resp = portal.client.get("/api/v1/users", headers=portal.auth(portal.users.admin))
        states = {u["username"]: u["account_state"] for u in resp.json()["users"]}
        assert states["rclerk"] == "active"
        assert states["rfinance"] == "deactivated"
        assert "view_users" in _audit_actions(portal)

    def test_register_branch_users(self, portal) -> None:
        resp = portal.client.post(
            "/api/v1/branch-users",
            json={
                "location": "lipa city",
                "users": [
                    {
                        "username": "lipaclerk",
                        "email": "lipaclerk@imvcmpc.coop",
                        "password": "Br4nch-pass!",
                        "role": "marketing_clerk",
                        "first_name": "Lina",
                        "last_name": "Pascual",
                    }
                ],
            },
            headers=portal.auth(portal.users.admin),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["branch_created"] is True
        assert data["branch"]["location"] == "LIPA CITY"
        assert data["users"][0]["employee_id"].startswith("MC")

        details = _latest_entry(portal, "add_branch_users").details
        assert details["user_count"] == 1
        assert details["created_employee_ids"] == [data["users"][0]["employee_id"]]
        assert "body" not in details

    def test_deactivate_and_reactivate(self, portal) -> None:
        admin = portal.auth(portal.users.admin)
        clerk_id = portal.users.clerk.id
        resp = portal.client.put(f"/api/v1/users/{clerk_id}/deactivate", headers=admin)
        assert resp.status_code == 200
        assert resp.json()["user"]["is_active"] is False
        assert _login(portal, "rclerk").json()["error"]["code"] == "ACCOUNT_DEACTIVATED"

        entry = _latest_entry(portal, "deactivate_user")
        assert entry.resource_id == str(clerk_id)
        assert entry.details["affected_user"]["branch_name"] == portal.users.branch.name

        assert portal.client.put(f"/api/v1/users/{clerk_id}/reactivate", headers=admin).status_code == 200
        assert _login(portal, "rclerk").status_code == 200

    def test_self_deactivation_refused(self, portal) -> None:
        admin = portal.users.admin
        resp = portal.client.put(f"/api/v1/users/{admin.id}/deactivate", headers=portal.auth(admin))
        assert resp.status_code == 400
        assert _latest_entry(portal, "deactivate_user").status == "failed"


# ---------------------------------------------------------------------------
# Branches and roles
# ---------------------------------------------------------------------------


class TestReferenceData:
    def test_branches(self, portal) -> None:
        data = portal.client.get("/api/v1/branches", headers=portal.auth(portal.users.clerk)).json()
        locations = {b["location"] for b in data["branches"]}
        assert "ROSARIO" in locations

    def test_roles(self, portal) -> None:
        data = portal.client.get("/api/v1/roles", headers=portal.auth(portal.users.clerk)).json()
        names = {r["name"] for r in data["roles"]}
        assert {"it_head", "marketing_clerk", "finance_officer"} <= names

    def test_role_permissions_admin_only(self, portal) -> None:
        role_id = portal.users.clerk.role_id
        url = f"/api/v1/roles/{role_id}/permissions"
        assert portal.client.get(url, headers=portal.auth(portal.users.clerk)).status_code == 403
        data = portal.client.get(url, headers=portal.auth(portal.users.admin)).json()
        assert data["role"] == "marketing_clerk"
        assert "read:member_data" in data["permissions"]


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


class TestAuditLogs:
    def test_list_and_pagination(self, portal) -> None:
        _login(portal, "rclerk")
        _login(portal, "rclerk", "bad-password")
        portal.flush_audit()
        resp = portal.client.get(
            "/api/v1/audit-logs?eventType=login&limit=1", headers=portal.auth(portal.users.admin)
        )
        data = resp.json()
        assert data["pagination"] == {"total": 2, "limit": 1, "offset": 0, "total_pages": 2}
        assert data["logs"][0]["action"] == "login"

    def test_status_filter_is_validated(self, portal) -> None:
        resp = portal.client.get("/api/v1/audit-logs?status=maybe", headers=portal.auth(portal.users.admin))
        assert resp.status_code == 422

    def test_list_degrades_to_empty_on_store_error(self, portal, monkeypatch) -> None:
        def broken(q):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(portal.client.app.state.audit_store, "query", broken)
        resp = portal.client.get("/api/v1/audit-logs", headers=portal.auth(portal.users.admin))
        assert resp.status_code == 200
        assert resp.json()["logs"] == []
        assert resp.json()["pagination"]["total"] == 0

    def test_summary(self, portal) -> None:
        _login(portal, "rclerk")
        portal.flush_audit()
        data = portal.client.get("/api/v1/audit-logs/summary?days=7", headers=portal.auth(portal.users.admin)).json()
        assert data["days"] == 7
        assert {"action": "login", "total": 1, "success": 1, "failed": 0} in data["summary"]

    def test_export_csv(self, portal) -> None:
        _login(portal, "rclerk")
        portal.flush_audit()
        resp = portal.client.get("/api/v1/audit-logs/export/csv", headers=portal.auth(portal.users.admin))
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert 'filename="audit_logs_' in resp.headers["content-disposition"]
        lines = resp.text.strip().splitlines()
        assert lines[0].startswith("Timestamp,User,Action")
        assert any(",login," in line for line in lines[1:])
        assert "download_audit_logs" in _audit_actions(portal)

    def test_detail_and_missing(self, portal) -> None:
        _login(portal, "rclerk")
        entry = _latest_entry(portal, "login")
        admin = portal.auth(portal.users.admin)
        found = portal.client.get(f"/api/v1/audit-logs/{entry.id}", headers=admin)
        assert found.json()["log"]["username"] == "rclerk"
        missing = portal.client.get("/api/v1/audit-logs/999999", headers=admin)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"
