"""
audit/enrichers.py -- Action-specific detail enrichment for audit entries.

Registry pattern: each enricher registers for one or more action names with
@enricher(...). The recorder looks the action up and calls the function with
the event, the mutable details dict and the credential store. Adding an
audited action means adding a function here, not editing the recorder.

Enrichment is best-effort. Any exception is logged here and the base entry
is still written by the recorder.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from audit.models import AuditEvent
from auth.store import CredentialStore

logger = logging.getLogger("coopportal.audit.enrichers")

Enricher = Callable[[AuditEvent, dict[str, Any], CredentialStore], None]

_REGISTRY: dict[str, Enricher] = {}


def enricher(*actions: str) -> Callable[[Enricher], Enricher]:
    def register(func: Enricher) -> Enricher:
        for action in actions:
            _REGISTRY[action] = func
        return func

    return register


def registered_actions() -> list[str]:
    return sorted(_REGISTRY)


def enrich(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> dict[str, Any]:
    func = _REGISTRY.get(event.action)
    if func is None:
        return details
    try:
        func(event, details, store)
    except Exception:
        logger.warning("Audit enrichment failed for action=%s", event.action, exc_info=True)
    return details


def _int_param(event: AuditEvent, name: str) -> int | None:
    raw = event.path_params.get(name, event.body.get(name))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Enrichers
# ---------------------------------------------------------------------------


@enricher("login", "request_reactivation_code", "request_reactivation")
def _submitted_username(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    details["username"] = event.body.get("username")


@enricher("request_password_reset")
def _reset_identifier(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    details["identifier"] = event.body.get("identifier") or event.body.get("username") or event.body.get("email")


@enricher("deactivate_user", "reactivate_user")
def _affected_user(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    user_id = _int_param(event, "user_id")
    if user_id is None:
        return
    user = store.get_user_by_id(user_id)
    if user is None:
        return
    details["affected_user"] = {
        "id": user.id,
        "username": user.username,
        "name": user.full_name,
        "employee_id": user.employee_id,
        "branch_id": user.branch_id,
        "branch_name": user.branch.name if user.branch else None,
    }


@enricher("approve_reactivation_request", "reject_reactivation_request", "review_reactivation_request")
def _reactivation_decision(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    details["decision"] = event.body.get("action")
    details["review_notes"] = event.body.get("notes")
    request_id = _int_param(event, "request_id")
    if request_id is None:
        return
    request = store.get_reactivation_request(request_id)
    if request is not None:
        details["affected_user"] = {
            "id": request.user_id,
            "username": request.username,
            "name": request.full_name,
            "branch_name": request.branch_name,
        }


@enricher("add_branch_users")
def _bulk_registration(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    users = event.body.get("users") or []
    roles: dict[str, int] = {}
    for entry in users:
        if isinstance(entry, dict):
            role = str(entry.get("role"))
            roles[role] = roles.get(role, 0) + 1
    details.pop("body", None)
    details["location"] = event.body.get("location")
    details["user_count"] = len(users)
    details["role_counts"] = roles
    details["created_employee_ids"] = [u.get("employee_id") for u in event.response.get("users", [])]


@enricher("update_profile")
def _profile_fields(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    details.pop("body", None)
    details["updated_fields"] = sorted(k for k, v in event.body.items() if v is not None)


@enricher("change_password", "update_password_via_reset")
def _password_change(event: AuditEvent, details: dict[str, Any], store: CredentialStore) -> None:
    details.pop("body", None)
