"""
auth/models.py -- Domain dataclasses for authentication and account entities.

Pattern: Data class (pure data container, zero logic). Stores map rows into
these; services and routes do the work.

Timestamps are kept as the stored ISO-8601 strings. core.time_utils.parse_iso
turns them into datetimes where arithmetic is needed.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class AccountState(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    PENDING_REACTIVATION = "pending_reactivation"


@dataclass
class Role:
    name: str  # "marketing_clerk", "finance_officer", "it_head"
    display_name: str
    id: int | None = None
    description: str = ""
    permissions: list[str] = field(default_factory=list)


@dataclass
class Branch:
    """A cooperative branch. Exactly one row carries is_main_branch=True."""

    name: str
    location: str
    id: int | None = None
    is_main_branch: bool = False
    created_at: str | None = None


@dataclass
class User:
    """A portal account.

    role_name is denormalised from the roles table on every read so callers
    never need a second lookup. branch is None for head-office roles.
    """

    username: str
    email: str
    role_id: int
    id: int | None = None
    password_hash: str = ""
    first_name: str = ""
    last_name: str = ""
    employee_id: str | None = None
    phone_number: str | None = None
    role_name: str = ""
    branch_id: int | None = None
    branch: Branch | None = None
    is_active: bool = True
    last_login: str | None = None
    last_profile_update: str | None = None
    last_password_change: str | None = None
    created_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.username

    @property
    def is_main_branch(self) -> bool:
        return self.branch is not None and self.branch.is_main_branch


@dataclass
class Identity:
    """The resolved caller for one request: a fresh User plus its permission set."""

    user: User
    permissions: list[str]

    @property
    def user_id(self) -> int:
        return self.user.id  # type: ignore[return-value]

    @property
    def role(self) -> str:
        return self.user.role_name

    @property
    def branch_id(self) -> int | None:
        return self.user.branch_id

    @property
    def is_main_branch(self) -> bool:
        return self.user.is_main_branch


@dataclass
class UserSession:
    """Refresh-token record. token_hash is HMAC-SHA256 of the raw refresh token."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    device_info: str | None = None
    ip_address: str | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    user_id: int
    token: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class ReactivationCode:
    user_id: int
    code: str
    expires_at: str
    id: int | None = None
    used: bool = False
    created_at: str | None = None


@dataclass
class ReactivationRequest:
    user_id: int
    reason: str
    id: int | None = None
    status: str = "pending"  # "pending" -> "approved" | "rejected"
    reviewed_by: int | None = None
    review_notes: str | None = None
    reviewed_at: str | None = None
    created_at: str | None = None
    # Populated by list queries for the admin review screen.
    username: str | None = None
    full_name: str | None = None
    email: str | None = None
    branch_name: str | None = None
