"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_* functions are the mappers. Services never touch SQL directly.

Connection discipline:
  Reads go through core.database.connect(); every mutation that touches more
  than one row or table goes through core.database.transaction(), which
  commits on success, rolls back on any exception and always releases the
  connection. Nothing in this module retries.

  Rules that must hold under concurrency are checked inside the same
  transaction as the write they guard (pending-request uniqueness, single
  use of reset tokens and verification codes, review of a still-pending
  request). Those checks raise auth.errors directly.

Security:
  All queries use bound parameters. Refresh tokens are stored only as
  HMAC-SHA256 digests (see auth/tokens.hash_token).

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth import schema
from auth.errors import (
    DuplicateIdentity,
    DuplicatePendingRequest,
    InvalidOrExpiredCode,
    InvalidOrExpiredToken,
    RequestAlreadyReviewed,
)
from auth.models import (
    AccountState,
    Branch,
    PasswordResetToken,
    ReactivationRequest,
    Role,
    User,
    UserSession,
)
from auth.permissions import MAIN_BRANCH, ROLE_DEFINITIONS
from core.database import connect, transaction
from core.time_utils import to_iso, utcnow

logger = logging.getLogger("coopportal.auth.store")

_u = schema.users
_r = schema.roles
_b = schema.branches

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


def normalize_location(location: str) -> str:
    """Trim, collapse inner whitespace, upper-case. Branch identity key."""
    return " ".join(location.split()).upper()


def _user_select():
    return select(
        _u,
        _r.c.name.label("role_name"),
        _b.c.name.label("branch_name"),
        _b.c.location.label("branch_location"),
        _b.c.is_main_branch.label("branch_is_main"),
        _b.c.created_at.label("branch_created_at"),
    ).select_from(_u.join(_r, _u.c.role_id == _r.c.id).outerjoin(_b, _u.c.branch_id == _b.c.id))


class CredentialStore:
    """Repository for users, roles, branches, sessions, reset tokens,
    verification codes and reactivation requests.

    Usage:
        engine = make_engine(settings.database_url)
        create_schema(engine)
        store = CredentialStore(engine)
        store.seed_reference_data()
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_reference_data(self) -> None:
        """Insert the role catalogue, its grants and the main branch. Idempotent."""
        now = to_iso(utcnow())
        with transaction(self.engine) as conn:
            for name, display, description, _prefix, _needs_branch, grants in ROLE_DEFINITIONS:
                role_id = conn.execute(select(_r.c.id).where(_r.c.name == name)).scalar()
                if role_id is None:
                    role_id = conn.execute(
                        _r.insert().values(name=name, display_name=display, description=description, created_at=now)
                    ).inserted_primary_key[0]
                for perm in grants:
                    perm_id = conn.execute(
                        select(schema.permissions.c.id).where(schema.permissions.c.name == perm)
                    ).scalar()
                    if perm_id is None:
                        action, _, resource = perm.partition(":")
                        perm_id = conn.execute(
                            schema.permissions.insert().values(name=perm, resource=resource, action=action)
                        ).inserted_primary_key[0]
                    linked = conn.execute(
                        select(schema.role_permissions.c.role_id).where(
                            and_(
                                schema.role_permissions.c.role_id == role_id,
                                schema.role_permissions.c.permission_id == perm_id,
                            )
                        )
                    ).first()
                    if linked is None:
                        conn.execute(schema.role_permissions.insert().values(role_id=role_id, permission_id=perm_id))
            main_name, main_location = MAIN_BRANCH
            if conn.execute(select(_b.c.id).where(_b.c.is_main_branch == 1)).first() is None:
                conn.execute(
                    _b.insert().values(name=main_name, location=main_location, is_main_branch=1, created_at=now)
                )

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def permissions_for_role(self, role_id: int) -> list[str]:
        rp = schema.role_permissions
        p = schema.permissions
        with connect(self.engine) as conn:
            rows = conn.execute(
                select(p.c.name)
                .select_from(rp.join(p, rp.c.permission_id == p.c.id))
                .where(rp.c.role_id == role_id)
                .order_by(p.c.name)
            ).fetchall()
        return [r.name for r in rows]

    def get_role(self, role_id: int) -> Role | None:
        with connect(self.engine) as conn:
            row = conn.execute(_r.select().where(_r.c.id == role_id)).fetchone()
        if row is None:
            return None
        return _row_to_role(row, self.permissions_for_role(row.id))

    def get_role_by_name(self, name: str) -> Role | None:
        with connect(self.engine) as conn:
            row = conn.execute(_r.select().where(_r.c.name == name)).fetchone()
        if row is None:
            return None
        return _row_to_role(row, self.permissions_for_role(row.id))

    def list_roles(self) -> list[Role]:
        with connect(self.engine) as conn:
            rows = conn.execute(_r.select().order_by(_r.c.id)).fetchall()
        return [_row_to_role(r, self.permissions_for_role(r.id)) for r in rows]

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def list_branches(self) -> list[Branch]:
        with connect(self.engine) as conn:
            rows = conn.execute(_b.select().order_by(_b.c.id)).fetchall()
        return [_row_to_branch(r) for r in rows]

    def get_branch(self, branch_id: int) -> Branch | None:
        with connect(self.engine) as conn:
            row = conn.execute(_b.select().where(_b.c.id == branch_id)).fetchone()
        return _row_to_branch(row) if row is not None else None

    def count_branches_at(self, location: str) -> int:
        with connect(self.engine) as conn:
            return conn.execute(
                select(func.count()).select_from(_b).where(_b.c.location == normalize_location(location))
            ).scalar_one()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_by_id(self, user_id: int) -> User | None:
        with connect(self.engine) as conn:
            row = conn.execute(_user_select().where(_u.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        with connect(self.engine) as conn:
            row = conn.execute(_user_select().where(_u.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_login(self, identifier: str) -> User | None:
        """Case-sensitive match on username OR email."""
        with connect(self.engine) as conn:
            row = conn.execute(
                _user_select().where(or_(_u.c.username == identifier, _u.c.email == identifier)).order_by(_u.c.id)
            ).first()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with connect(self.engine) as conn:
            rows = conn.execute(_user_select().order_by(_u.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def identity_taken(self, username: str | None, email: str | None, exclude_user_id: int | None = None) -> bool:
        clauses = []
        if username:
            clauses.append(_u.c.username == username)
        if email:
            clauses.append(_u.c.email == email)
        if not clauses:
            return False
        query = select(_u.c.id).where(or_(*clauses))
        if exclude_user_id is not None:
            query = query.where(_u.c.id != exclude_user_id)
        with connect(self.engine) as conn:
            return conn.execute(query).first() is not None

    def create_user(self, user: User, created_at: datetime) -> int:
        """Insert a user. Raises DuplicateIdentity on a username/email clash."""
        try:
            with transaction(self.engine) as conn:
                return conn.execute(_u.insert().values(**_user_values(user, created_at))).inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc

    def update_last_login(self, user_id: int, at: datetime) -> None:
        with transaction(self.engine) as conn:
            conn.execute(_u.update().where(_u.c.id == user_id).values(last_login=to_iso(at)))

    def set_active(self, user_id: int, active: bool) -> bool:
        with transaction(self.engine) as conn:
            result = conn.execute(_u.update().where(_u.c.id == user_id).values(is_active=1 if active else 0))
        return result.rowcount > 0

    def update_password(self, user_id: int, password_hash: str, at: datetime) -> None:
        with transaction(self.engine) as conn:
            conn.execute(
                _u.update()
                .where(_u.c.id == user_id)
                .values(password_hash=password_hash, last_password_change=to_iso(at))
            )

    def update_profile(self, user_id: int, at: datetime, **fields) -> None:
        """Update profile columns and stamp last_profile_update.

        Accepted fields: username, email, first_name, last_name, phone_number.
        """
        allowed = {"username", "email", "first_name", "last_name", "phone_number"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        try:
            with transaction(self.engine) as conn:
                conn.execute(_u.update().where(_u.c.id == user_id).values(last_profile_update=to_iso(at), **fields))
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc

    def count_active_with_role(self, role_name: str) -> int:
        with connect(self.engine) as conn:
            return conn.execute(
                select(func.count())
                .select_from(_u.join(_r, _u.c.role_id == _r.c.id))
                .where(and_(_r.c.name == role_name, _u.c.is_active == 1))
            ).scalar_one()

    def active_user_ids_with_role(self, role_name: str) -> list[int]:
        with connect(self.engine) as conn:
            rows = conn.execute(
                select(_u.c.id)
                .select_from(_u.join(_r, _u.c.role_id == _r.c.id))
                .where(and_(_r.c.name == role_name, _u.c.is_active == 1))
            ).fetchall()
        return [r.id for r in rows]

    def account_state(self, user: User) -> AccountState:
        if user.is_active:
            return AccountState.ACTIVE
        if self.has_pending_request(user.id):
            return AccountState.PENDING_REACTIVATION
        return AccountState.DEACTIVATED

    # ------------------------------------------------------------------
    # Branch-user provisioning
    # ------------------------------------------------------------------

    def provision_branch_users(
        self,
        location: str,
        entries: list[tuple[User, str]],
        at: datetime,
    ) -> tuple[Branch, bool, list[User]]:
        """Get-or-create the branch for location and insert users in one transaction.

        entries pairs each new User with its employee-id prefix. Ids are taken
        from the global per-prefix counter in list order. Any failure rolls
        back the branch, the counters and every user.

        Returns (branch, branch_created, created_users).
        """
        normalized = normalize_location(location)
        stamp = to_iso(at)
        try:
            with transaction(self.engine) as conn:
                row = conn.execute(_b.select().where(_b.c.location == normalized)).fetchone()
                created = row is None
                if created:
                    branch_id = conn.execute(
                        _b.insert().values(name=normalized, location=normalized, is_main_branch=0, created_at=stamp)
                    ).inserted_primary_key[0]
                    conn.execute(_b.update().where(_b.c.id == branch_id).values(name=f"Branch {branch_id}"))
                    row = conn.execute(_b.select().where(_b.c.id == branch_id)).fetchone()
                branch = _row_to_branch(row)

                new_ids = []
                for user, prefix in entries:
                    user.branch_id = branch.id
                    user.employee_id = _next_employee_id(conn, prefix)
                    new_ids.append(
                        conn.execute(_u.insert().values(**_user_values(user, at))).inserted_primary_key[0]
                    )
                rows = conn.execute(_user_select().where(_u.c.id.in_(new_ids)).order_by(_u.c.id)).fetchall()
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc
        logger.info(
            "Provisioned %d user(s) for branch %s (created=%s)",
            len(new_ids),
            branch.location,
            created,
        )
        return branch, created, [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions (refresh-token records)
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> int:
        with transaction(self.engine) as conn:
            result = conn.execute(
                schema.user_sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    device_info=session.device_info,
                    ip_address=session.ip_address,
                    expires_at=session.expires_at,
                    created_at=session.created_at,
                )
            )
        return result.inserted_primary_key[0]

    def get_live_session(self, token_hash: str, now: datetime) -> UserSession | None:
        s = schema.user_sessions
        with connect(self.engine) as conn:
            row = conn.execute(
                s.select().where(and_(s.c.token_hash == token_hash, s.c.expires_at > to_iso(now)))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, token_hash: str, user_id: int | None = None) -> bool:
        s = schema.user_sessions
        query = s.delete().where(s.c.token_hash == token_hash)
        if user_id is not None:
            query = query.where(s.c.user_id == user_id)
        with transaction(self.engine) as conn:
            result = conn.execute(query)
        return result.rowcount > 0

    def count_sessions(self, user_id: int) -> int:
        s = schema.user_sessions
        with connect(self.engine) as conn:
            return conn.execute(select(func.count()).select_from(s).where(s.c.user_id == user_id)).scalar_one()

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def get_live_reset_token_for_user(self, user_id: int, now: datetime) -> PasswordResetToken | None:
        t = schema.password_reset_tokens
        with connect(self.engine) as conn:
            row = conn.execute(
                t.select()
                .where(and_(t.c.user_id == user_id, t.c.used_at.is_(None), t.c.expires_at > to_iso(now)))
                .order_by(t.c.id.desc())
            ).first()
        return _row_to_reset_token(row) if row is not None else None

    def create_reset_token(self, token: PasswordResetToken) -> int:
        with transaction(self.engine) as conn:
            result = conn.execute(
                schema.password_reset_tokens.insert().values(
                    user_id=token.user_id,
                    token=token.token,
                    expires_at=token.expires_at,
                    created_at=token.created_at,
                )
            )
        return result.inserted_primary_key[0]

    def get_live_reset_token(self, token: str, now: datetime) -> PasswordResetToken | None:
        t = schema.password_reset_tokens
        with connect(self.engine) as conn:
            row = conn.execute(
                t.select().where(and_(t.c.token == token, t.c.used_at.is_(None), t.c.expires_at > to_iso(now)))
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume_reset_token(self, token_id: int, user_id: int, password_hash: str, now: datetime) -> None:
        """Mark the token used and set the new password atomically.

        The used_at IS NULL guard makes a second concurrent consumer update
        zero rows; that caller gets InvalidOrExpiredToken and nothing changes.
        """
        t = schema.password_reset_tokens
        stamp = to_iso(now)
        with transaction(self.engine) as conn:
            result = conn.execute(
                t.update()
                .where(and_(t.c.id == token_id, t.c.used_at.is_(None), t.c.expires_at > stamp))
                .values(used_at=stamp)
            )
            if result.rowcount == 0:
                raise InvalidOrExpiredToken()
            conn.execute(
                _u.update().where(_u.c.id == user_id).values(password_hash=password_hash, last_password_change=stamp)
            )

    # ------------------------------------------------------------------
    # Reactivation verification codes
    # ------------------------------------------------------------------

    def replace_reactivation_code(self, user_id: int, code: str, expires_at: datetime, now: datetime) -> None:
        """Invalidate every unused code for the user, then store the new one."""
        c = schema.reactivation_codes
        with transaction(self.engine) as conn:
            conn.execute(c.update().where(and_(c.c.user_id == user_id, c.c.used == 0)).values(used=1))
            conn.execute(
                c.insert().values(user_id=user_id, code=code, expires_at=to_iso(expires_at), created_at=to_iso(now))
            )

    # ------------------------------------------------------------------
    # Reactivation requests
    # ------------------------------------------------------------------

    def has_pending_request(self, user_id: int) -> bool:
        q = schema.reactivation_requests
        with connect(self.engine) as conn:
            row = conn.execute(select(q.c.id).where(and_(q.c.user_id == user_id, q.c.status == PENDING))).first()
        return row is not None

    def create_reactivation_request(
        self,
        user_id: int,
        reason: str,
        now: datetime,
        code: str | None = None,
    ) -> int:
        """Open a pending request; when code is given, consume it in the same transaction.

        Order inside the transaction: pending check, code consumption, insert.
        A duplicate request therefore leaves the code unused.
        """
        q = schema.reactivation_requests
        c = schema.reactivation_codes
        stamp = to_iso(now)
        try:
            with transaction(self.engine) as conn:
                pending = conn.execute(
                    select(q.c.id).where(and_(q.c.user_id == user_id, q.c.status == PENDING))
                ).first()
                if pending is not None:
                    raise DuplicatePendingRequest()
                if code is not None:
                    consumed = conn.execute(
                        c.update()
                        .where(and_(c.c.user_id == user_id, c.c.code == code, c.c.used == 0, c.c.expires_at > stamp))
                        .values(used=1)
                    )
                    if consumed.rowcount == 0:
                        raise InvalidOrExpiredCode()
                result = conn.execute(
                    q.insert().values(user_id=user_id, reason=reason, status=PENDING, created_at=stamp)
                )
        except IntegrityError as exc:
            raise DuplicatePendingRequest() from exc
        return result.inserted_primary_key[0]

    def get_reactivation_request(self, request_id: int) -> ReactivationRequest | None:
        with connect(self.engine) as conn:
            row = conn.execute(_request_select().where(schema.reactivation_requests.c.id == request_id)).fetchone()
        return _row_to_request(row) if row is not None else None

    def list_reactivation_requests(self, status: str | None = PENDING) -> list[ReactivationRequest]:
        q = schema.reactivation_requests
        query = _request_select().order_by(q.c.created_at.desc(), q.c.id.desc())
        if status is not None:
            query = query.where(q.c.status == status)
        with connect(self.engine) as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_request(r) for r in rows]

    def review_request(
        self,
        request_id: int,
        approve: bool,
        reviewer_id: int,
        notes: str | None,
        now: datetime,
    ) -> None:
        """Close a pending request and, on approval, reactivate its user."""
        q = schema.reactivation_requests
        with transaction(self.engine) as conn:
            row = conn.execute(select(q.c.user_id).where(q.c.id == request_id)).fetchone()
            result = conn.execute(
                q.update()
                .where(and_(q.c.id == request_id, q.c.status == PENDING))
                .values(
                    status=APPROVED if approve else REJECTED,
                    reviewed_by=reviewer_id,
                    review_notes=notes,
                    reviewed_at=to_iso(now),
                )
            )
            if row is None or result.rowcount == 0:
                raise RequestAlreadyReviewed()
            if approve:
                conn.execute(_u.update().where(_u.c.id == row.user_id).values(is_active=1))

    def reactivate_directly(self, user_id: int, admin_id: int, now: datetime) -> int | None:
        """Reactivate without a request; close any pending one as approved.

        Returns the id of the closed request, if there was one.
        """
        q = schema.reactivation_requests
        with transaction(self.engine) as conn:
            conn.execute(_u.update().where(_u.c.id == user_id).values(is_active=1))
            pending = conn.execute(
                select(q.c.id).where(and_(q.c.user_id == user_id, q.c.status == PENDING))
            ).first()
            if pending is None:
                return None
            conn.execute(
                q.update()
                .where(q.c.id == pending.id)
                .values(
                    status=APPROVED,
                    reviewed_by=admin_id,
                    review_notes="Reactivated directly by administrator",
                    reviewed_at=to_iso(now),
                )
            )
            return pending.id

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> dict[str, int]:
        """Delete expired sessions, dead reset tokens and dead verification codes."""
        stamp = to_iso(now)
        s = schema.user_sessions
        t = schema.password_reset_tokens
        c = schema.reactivation_codes
        with transaction(self.engine) as conn:
            sessions = conn.execute(s.delete().where(s.c.expires_at <= stamp)).rowcount
            tokens = conn.execute(t.delete().where(or_(t.c.expires_at <= stamp, t.c.used_at.is_not(None)))).rowcount
            codes = conn.execute(c.delete().where(or_(c.c.expires_at <= stamp, c.c.used == 1))).rowcount
        return {"sessions": sessions, "reset_tokens": tokens, "reactivation_codes": codes}


# ---------------------------------------------------------------------------
# Transaction helpers
# ---------------------------------------------------------------------------


def _next_employee_id(conn, prefix: str) -> str:
    seq = schema.employee_sequences
    current = conn.execute(select(seq.c.last_value).where(seq.c.prefix == prefix)).scalar()
    if current is None:
        value = 1
        conn.execute(seq.insert().values(prefix=prefix, last_value=value))
    else:
        value = current + 1
        conn.execute(seq.update().where(seq.c.prefix == prefix).values(last_value=value))
    return f"{prefix}{value:03d}"


def _user_values(user: User, created_at: datetime) -> dict:
    return {
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "employee_id": user.employee_id,
        "phone_number": user.phone_number,
        "role_id": user.role_id,
        "branch_id": user.branch_id,
        "is_active": 1 if user.is_active else 0,
        "created_at": to_iso(created_at),
    }


def _request_select():
    q = schema.reactivation_requests
    return select(
        q,
        _u.c.username,
        _u.c.first_name,
        _u.c.last_name,
        _u.c.email,
        _b.c.name.label("branch_name"),
    ).select_from(q.join(_u, q.c.user_id == _u.c.id).outerjoin(_b, _u.c.branch_id == _b.c.id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_role(row, permissions: list[str]) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description or "",
        permissions=permissions,
    )


def _row_to_branch(row) -> Branch:
    return Branch(
        id=row.id,
        name=row.name,
        location=row.location,
        is_main_branch=bool(row.is_main_branch),
        created_at=row.created_at,
    )


def _row_to_user(row) -> User:
    branch = None
    if row.branch_id is not None:
        branch = Branch(
            id=row.branch_id,
            name=row.branch_name,
            location=row.branch_location,
            is_main_branch=bool(row.branch_is_main),
            created_at=row.branch_created_at,
        )
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        employee_id=row.employee_id,
        phone_number=row.phone_number,
        role_id=row.role_id,
        role_name=row.role_name,
        branch_id=row.branch_id,
        branch=branch,
        is_active=bool(row.is_active),
        last_login=row.last_login,
        last_profile_update=row.last_profile_update,
        last_password_change=row.last_password_change,
        created_at=row.created_at,
    )


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        device_info=row.device_info,
        ip_address=row.ip_address,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_request(row) -> ReactivationRequest:
    full_name = f"{row.first_name or ''} {row.last_name or ''}".strip() or row.username
    return ReactivationRequest(
        id=row.id,
        user_id=row.user_id,
        reason=row.reason,
        status=row.status,
        reviewed_by=row.reviewed_by,
        review_notes=row.review_notes,
        reviewed_at=row.reviewed_at,
        created_at=row.created_at,
        username=row.username,
        full_name=full_name,
        email=row.email,
        branch_name=row.branch_name,
    )
