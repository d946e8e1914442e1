"""
auth/provisioning.py -- Register users for a branch, creating the branch on demand.

Branch identity is the normalised location (trimmed, inner whitespace
collapsed, upper-cased), so " ibaan  east" and "IBAAN EAST" land on one row.
Employee ids come from one counter per role prefix shared by every branch:
the first clerk anywhere is MC001, the next clerk (any branch) MC002.

Every entry is validated before the store is touched; the store then writes
branch, counters and users in a single transaction.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth import passwords
from auth.errors import DuplicateIdentity, InvalidRegistration
from auth.models import Branch, User
from auth.permissions import employee_prefix, role_requires_branch
from auth.store import CredentialStore, normalize_location
from auth.tokens import hash_password
from core.config import Settings, get_settings
from core.time_utils import Clock, utcnow


@dataclass
class NewBranchUser:
    username: str
    email: str
    password: str
    role: str
    first_name: str = ""
    last_name: str = ""
    phone_number: str | None = None


@dataclass
class ProvisionResult:
    branch: Branch
    branch_created: bool
    users: list[User]


class BranchProvisioner:
    def __init__(self, store: CredentialStore, settings: Settings | None = None, clock: Clock = utcnow) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    def register(self, location: str, entries: list[NewBranchUser]) -> ProvisionResult:
        if not normalize_location(location or ""):
            raise InvalidRegistration("Branch location is required.")
        if not entries:
            raise InvalidRegistration("At least one user is required.")

        seen_usernames: set[str] = set()
        seen_emails: set[str] = set()
        prepared: list[tuple[User, str]] = []
        for index, entry in enumerate(entries):
            if not entry.username.strip() or not entry.email.strip() or not entry.password:
                raise InvalidRegistration("Username, email and password are required.", index)
            passwords.check_strength(entry.password, self.settings)

            role = self.store.get_role_by_name(entry.role)
            if role is None:
                raise InvalidRegistration(f"Unknown role '{entry.role}'.", index)
            if not role_requires_branch(role.name):
                raise InvalidRegistration(f"Role '{role.name}' cannot be assigned to a branch.", index)

            username = entry.username.strip()
            email = entry.email.strip()
            if username in seen_usernames or email in seen_emails or self.store.identity_taken(username, email):
                raise DuplicateIdentity()
            seen_usernames.add(username)
            seen_emails.add(email)

            user = User(
                username=username,
                email=email,
                role_id=role.id,
                password_hash=hash_password(entry.password),
                first_name=entry.first_name.strip(),
                last_name=entry.last_name.strip(),
                phone_number=entry.phone_number,
                role_name=role.name,
            )
            prepared.append((user, employee_prefix(role.name)))

        branch, created, users = self.store.provision_branch_users(location, prepared, self.clock())
        return ProvisionResult(branch=branch, branch_created=created, users=users)
