"""
auth/dependencies.py -- FastAPI Depends() helpers that form the authorization guard.

Four independently composable checks:
  get_identity()              Bearer token -> verified access claims -> fresh
                              user row -> is_active re-check -> Identity.
                              Also stored on request.state.identity so the
                              audit route can name the actor.
  require_role(*roles)        role allow-list (RoleDenied, 403).
  require_permission(name)    head admin always passes, else exact grant or
                              "*:*" (PermissionDenied, 403).
  require_branch_access       head admin and main-branch users pass; anyone
                              else must ask for their own branch id, read from
                              path, then JSON body, then query
                              (BranchAccessDenied, 403).

Each role/permission/branch dependency depends on get_identity, and FastAPI
caches dependencies per request, so stacking them resolves the user once.

The user record is always re-read from the store; token claims are never
trusted for is_active, role or branch.

Layer rule: this is the only auth/ module that imports FastAPI.
"""

from __future__ import annotations

import json
from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import AccountDeactivated, BranchAccessDenied, PermissionDenied, RoleDenied, TokenInvalid, TokenMissing
from auth.models import Identity
from auth.permissions import has_permission
from auth.tokens import ACCESS, subject_id
from core.config import get_settings


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_identity(request: Request) -> Identity:
    """Require a valid access token for an existing, active user."""
    token = _bearer_token(request)
    if token is None:
        raise TokenMissing()
    claims = request.app.state.token_codec.verify(token, ACCESS)
    user = request.app.state.credential_store.get_user_by_id(subject_id(claims))
    if user is None:
        raise TokenInvalid("User not found.")
    if not user.is_active:
        raise AccountDeactivated()
    identity = request.app.state.session_manager.resolve_identity(user)
    request.state.identity = identity
    return identity


def _is_head_admin(identity: Identity) -> bool:
    return identity.role == get_settings().head_admin_role


def require_role(*roles: str) -> Callable[..., Identity]:
    """Use as a FastAPI dependency:
    @router.get("/x")
    def route(identity: Identity = Depends(require_role("it_head"))): ...
    """
    allowed = list(roles)

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in allowed:
            raise RoleDenied(allowed, identity.role)
        return identity

    return dependency


def require_permission(name: str) -> Callable[..., Identity]:
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not has_permission(identity.role, identity.permissions, name, get_settings().head_admin_role):
            raise PermissionDenied(name, identity.permissions)
        return identity

    return dependency


def _as_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _requested_branch_id(request: Request) -> int | None:
    if "branch_id" in request.path_params:
        return _as_int(request.path_params["branch_id"])
    if request.method not in ("GET", "HEAD", "DELETE"):
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                body = None
            if isinstance(body, dict) and "branch_id" in body:
                return _as_int(body["branch_id"])
    if "branch_id" in request.query_params:
        return _as_int(request.query_params["branch_id"])
    return None


async def require_branch_access(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
    if _is_head_admin(identity) or identity.is_main_branch:
        return identity
    requested = await _requested_branch_id(request)
    if requested is None or requested != identity.branch_id:
        raise BranchAccessDenied(identity.branch_id, requested)
    return identity


require_admin = require_role(get_settings().head_admin_role)
