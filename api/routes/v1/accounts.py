"""
api/routes/v1/accounts.py -- User administration (head admin only).

Routes:
  GET  /api/v1/users                        -- all users with derived account state
  POST /api/v1/branch-users                 -- register users for a branch location
  PUT  /api/v1/users/{user_id}/deactivate   -- blocks self and last-admin deactivation
  PUT  /api/v1/users/{user_id}/reactivate   -- closes any pending request as approved
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.audit_route import AuditedRoute, audited
from api.models import BranchResponse, BranchUsersCreate, BranchUsersCreated, UserEnvelope, UserList, UserResponse
from auth.dependencies import require_admin
from auth.lifecycle import AccountLifecycle
from auth.models import Identity
from auth.provisioning import BranchProvisioner, NewBranchUser
from auth.store import CredentialStore

router = APIRouter(route_class=AuditedRoute)


@router.get("/users", response_model=UserList)
@audited("view_users", "users")
def list_users(request: Request, identity: Identity = Depends(require_admin)) -> UserList:
    store: CredentialStore = request.app.state.credential_store
    return UserList(users=[UserResponse.from_user(u, store.account_state(u)) for u in store.list_users()])


@router.post("/branch-users", response_model=BranchUsersCreated, status_code=201)
@audited("add_branch_users", "users")
def add_branch_users(
    request: Request,
    body: BranchUsersCreate,
    identity: Identity = Depends(require_admin),
) -> BranchUsersCreated:
    provisioner: BranchProvisioner = request.app.state.provisioner
    result = provisioner.register(
        body.location,
        [
            NewBranchUser(
                username=u.username,
                email=u.email,
                password=u.password,
                role=u.role,
                first_name=u.first_name,
                last_name=u.last_name,
                phone_number=u.phone_number,
            )
            for u in body.users
        ],
    )
    return BranchUsersCreated(
        branch=BranchResponse.from_branch(result.branch),
        branch_created=result.branch_created,
        users=[UserResponse.from_user(u) for u in result.users],
    )


@router.put("/users/{user_id}/deactivate", response_model=UserEnvelope)
@audited("deactivate_user", "users", "user_id")
def deactivate_user(request: Request, user_id: int, identity: Identity = Depends(require_admin)) -> UserEnvelope:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    user = lifecycle.deactivate(user_id, identity)
    return UserEnvelope(message="User deactivated successfully.", user=UserResponse.from_user(user))


@router.put("/users/{user_id}/reactivate", response_model=UserEnvelope)
@audited("reactivate_user", "users", "user_id")
def reactivate_user(request: Request, user_id: int, identity: Identity = Depends(require_admin)) -> UserEnvelope:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    user = lifecycle.reactivate(user_id, identity)
    return UserEnvelope(message="User reactivated successfully.", user=UserResponse.from_user(user))
