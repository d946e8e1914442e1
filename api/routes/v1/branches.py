"""
api/routes/v1/branches.py -- Branch and role reference listings.

Routes:
  GET /api/v1/branches                    -- any authenticated user
  GET /api/v1/branches/{branch_id}        -- read:member_data + branch scope
  GET /api/v1/roles                       -- any authenticated user
  GET /api/v1/roles/{role_id}/permissions -- head admin

The branch detail route is 404 for an unknown id only after the scope check
has passed, so a branch user cannot probe which branch ids exist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import BranchEnvelope, BranchList, BranchResponse, RoleList, RolePermissions, RoleResponse
from auth.dependencies import get_identity, require_admin, require_branch_access, require_permission
from auth.errors import NotFound
from auth.models import Identity
from auth.store import CredentialStore

router = APIRouter()


@router.get("/branches", response_model=BranchList)
def list_branches(request: Request, identity: Identity = Depends(get_identity)) -> BranchList:
    store: CredentialStore = request.app.state.credential_store
    return BranchList(branches=[BranchResponse.from_branch(b) for b in store.list_branches()])


@router.get(
    "/branches/{branch_id}",
    response_model=BranchEnvelope,
    dependencies=[Depends(require_permission("read:member_data"))],
)
def get_branch(
    request: Request,
    branch_id: int,
    identity: Identity = Depends(require_branch_access),
) -> BranchEnvelope:
    store: CredentialStore = request.app.state.credential_store
    branch = store.get_branch(branch_id)
    if branch is None:
        raise NotFound("Branch not found.")
    return BranchEnvelope(branch=BranchResponse.from_branch(branch))


@router.get("/roles", response_model=RoleList)
def list_roles(request: Request, identity: Identity = Depends(get_identity)) -> RoleList:
    store: CredentialStore = request.app.state.credential_store
    return RoleList(roles=[RoleResponse.from_role(r) for r in store.list_roles()])


@router.get("/roles/{role_id}/permissions", response_model=RolePermissions)
def role_permissions(request: Request, role_id: int, identity: Identity = Depends(require_admin)) -> RolePermissions:
    store: CredentialStore = request.app.state.credential_store
    role = store.get_role(role_id)
    if role is None:
        raise NotFound("Role not found.")
    return RolePermissions(role=role.name, permissions=role.permissions)
