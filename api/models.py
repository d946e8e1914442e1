"""
API request and response models for the portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two with the from_* factory methods below.

Every response carries "success". Errors use ErrorResponse.
"""

from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from audit.models import AuditLogEntry
from auth.models import AccountState, Branch, ReactivationRequest, Role, User

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    database: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255, description="Username or email address")
    password: str = Field(min_length=1, max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255, pattern=_EMAIL_PATTERN)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=30)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("identifier", "username", "email"),
    )


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class SendReactivationCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class VerifyReactivationCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=1, max_length=12)
    reason: str = Field(default="", max_length=2000)


class ReactivationRequestCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    reason: str = Field(default="", max_length=2000)


class ReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    notes: Optional[str] = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class BranchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    location: str
    is_main_branch: bool

    @classmethod
    def from_branch(cls, branch: Branch) -> "BranchResponse":
        return cls(id=branch.id, name=branch.name, location=branch.location, is_main_branch=branch.is_main_branch)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    employee_id: Optional[str]
    phone_number: Optional[str]
    role: str
    branch_id: Optional[int]
    branch: Optional[BranchResponse]
    is_main_branch: bool
    is_active: bool
    account_state: Optional[AccountState] = None
    last_login: Optional[str]
    last_profile_update: Optional[str]
    last_password_change: Optional[str]

    @classmethod
    def from_user(cls, user: User, state: Optional[AccountState] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            employee_id=user.employee_id,
            phone_number=user.phone_number,
            role=user.role_name,
            branch_id=user.branch_id,
            branch=BranchResponse.from_branch(user.branch) if user.branch else None,
            is_main_branch=user.is_main_branch,
            is_active=user.is_active,
            account_state=state,
            last_login=user.last_login,
            last_profile_update=user.last_profile_update,
            last_password_change=user.last_password_change,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
    permissions: list[str]


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class ProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse
    permissions: list[str]


class ForgotPasswordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str


class CodeSentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    email_hint: str
    expires_in_minutes: int


class ReactivationRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    username: Optional[str]
    full_name: Optional[str]
    email: Optional[str]
    branch_name: Optional[str]
    reason: str
    status: str
    reviewed_by: Optional[int]
    review_notes: Optional[str]
    reviewed_at: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_request(cls, req: ReactivationRequest) -> "ReactivationRequestResponse":
        return cls(
            id=req.id,
            user_id=req.user_id,
            username=req.username,
            full_name=req.full_name,
            email=req.email,
            branch_name=req.branch_name,
            reason=req.reason,
            status=req.status,
            reviewed_by=req.reviewed_by,
            review_notes=req.review_notes,
            reviewed_at=req.reviewed_at,
            created_at=req.created_at,
        )


class ReactivationRequestList(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    requests: list[ReactivationRequestResponse]


class ReactivationSubmitted(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    request_id: int


class ReviewResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    request: ReactivationRequestResponse


# ---------------------------------------------------------------------------
# Accounts and branches
# ---------------------------------------------------------------------------


class BranchUserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50)
    email: str = Field(max_length=255, pattern=_EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=128)
    role: str = Field(min_length=1, max_length=50)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=30)


class BranchUsersCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    location: str = Field(min_length=1, max_length=100)
    users: list[BranchUserCreate] = Field(min_length=1, max_length=50)


class BranchUsersCreated(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    branch: BranchResponse
    branch_created: bool
    users: list[UserResponse]


class UserList(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    users: list[UserResponse]


class UserEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: Optional[str] = None
    user: UserResponse


class BranchList(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    branches: list[BranchResponse]


class BranchEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    branch: BranchResponse


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: str
    description: str
    permissions: list[str]

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            permissions=role.permissions,
        )


class RoleList(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    roles: list[RoleResponse]


class RolePermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    role: str
    permissions: list[str]


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    username: Optional[str]
    full_name: Optional[str]
    branch_id: Optional[int]
    branch_name: Optional[str]
    action: str
    resource: Optional[str]
    resource_id: Optional[str]
    details: dict[str, Any]
    ip_address: Optional[str]
    user_agent: Optional[str]
    status: str
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            username=entry.username,
            full_name=entry.full_name,
            branch_id=entry.branch_id,
            branch_name=entry.branch_name,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            status=entry.status,
            created_at=entry.created_at,
        )


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    limit: int
    offset: int
    total_pages: int


class AuditLogPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    logs: list[AuditLogResponse]
    pagination: Pagination


class AuditSummaryRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    total: int
    success: int
    failed: int


class AuditSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    days: int
    summary: list[AuditSummaryRow]


class AuditLogEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    log: AuditLogResponse
