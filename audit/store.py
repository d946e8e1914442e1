"""
audit/store.py -- Persistence and querying for the append-only audit_logs table.

Rows are only ever inserted. There is no update or delete method here.

Action categories (the filter the admin screen offers) map onto action-name
prefixes; "login" and "logout" match exactly; any other filter value is a
case-insensitive substring match on the action name.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.engine import Engine

from audit.models import FAILED, SUCCESS, AuditLogEntry
from auth import schema
from core.database import connect, transaction
from core.time_utils import to_iso

_a = schema.audit_logs
_u = schema.users
_b = schema.branches

CATEGORY_PREFIXES: dict[str, tuple[str, ...]] = {
    "view": ("view", "apply"),
    "create": ("create", "generate", "download", "request", "save", "send", "add"),
    "update": ("approve", "reject", "update", "change", "deactivate", "reactivate"),
    "delete": ("delete",),
}
EXACT_ACTIONS = ("login", "logout")

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


@dataclass
class AuditQuery:
    event_type: str | None = None
    user: str | None = None
    resource: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    status: str | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0


def _contains(column, value: str):
    """Case-insensitive substring match with LIKE wildcards in value taken literally."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return column.ilike(f"%{escaped}%", escape="\\")


def action_filter(event_type: str):
    """SQL condition for an event-type filter value."""
    key = event_type.strip().lower()
    if key in CATEGORY_PREFIXES:
        return or_(*(_a.c.action.like(f"{prefix}%") for prefix in CATEGORY_PREFIXES[key]))
    if key in EXACT_ACTIONS:
        return _a.c.action == key
    return _contains(_a.c.action, key)


def _entry_select():
    return select(
        _a,
        _u.c.username,
        _u.c.first_name,
        _u.c.last_name,
        _b.c.name.label("branch_name"),
    ).select_from(_a.outerjoin(_u, _a.c.user_id == _u.c.id).outerjoin(_b, _a.c.branch_id == _b.c.id))


def _conditions(q: AuditQuery) -> list:
    conditions = []
    if q.event_type:
        conditions.append(action_filter(q.event_type))
    if q.user:
        conditions.append(_contains(_u.c.username, q.user))
    if q.resource:
        conditions.append(_contains(_a.c.resource, q.resource))
    if q.date_from:
        conditions.append(_a.c.created_at >= q.date_from.isoformat())
    if q.date_to:
        conditions.append(_a.c.created_at < (q.date_to + timedelta(days=1)).isoformat())
    if q.status:
        conditions.append(_a.c.status == q.status)
    return conditions


class AuditStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, entry: AuditLogEntry) -> int:
        with transaction(self.engine) as conn:
            result = conn.execute(
                _a.insert().values(
                    user_id=entry.user_id,
                    branch_id=entry.branch_id,
                    action=entry.action,
                    resource=entry.resource,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details, default=str),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    status=entry.status,
                    created_at=entry.created_at,
                )
            )
        return result.inserted_primary_key[0]

    def query(self, q: AuditQuery) -> tuple[list[AuditLogEntry], int]:
        """Return (page, total_matching). limit is clamped to 1..MAX_LIMIT."""
        limit = min(max(q.limit, 1), MAX_LIMIT)
        offset = max(q.offset, 0)
        conditions = _conditions(q)
        where = and_(*conditions) if conditions else None

        page = _entry_select().order_by(_a.c.created_at.desc(), _a.c.id.desc()).limit(limit).offset(offset)
        count = select(func.count()).select_from(
            _a.outerjoin(_u, _a.c.user_id == _u.c.id).outerjoin(_b, _a.c.branch_id == _b.c.id)
        )
        if where is not None:
            page = page.where(where)
            count = count.where(where)
        with connect(self.engine) as conn:
            rows = conn.execute(page).fetchall()
            total = conn.execute(count).scalar_one()
        return [_row_to_entry(r) for r in rows], total

    def iter_entries(self, q: AuditQuery, batch_size: int = 500) -> Iterator[AuditLogEntry]:
        """Yield every matching entry newest first, one connection per batch.

        Batches continue strictly after the last (created_at, id) yielded, so
        rows inserted while an export is running never shift a later batch.
        """
        conditions = _conditions(q)
        cursor: tuple[str, int] | None = None
        while True:
            where = list(conditions)
            if cursor is not None:
                created_at, log_id = cursor
                where.append(
                    or_(_a.c.created_at < created_at, and_(_a.c.created_at == created_at, _a.c.id < log_id))
                )
            page = _entry_select().order_by(_a.c.created_at.desc(), _a.c.id.desc()).limit(batch_size)
            if where:
                page = page.where(and_(*where))
            with connect(self.engine) as conn:
                rows = conn.execute(page).fetchall()
            batch = [_row_to_entry(r) for r in rows]
            yield from batch
            if len(batch) < batch_size:
                return
            cursor = (batch[-1].created_at, batch[-1].id)

    def get(self, log_id: int) -> AuditLogEntry | None:
        with connect(self.engine) as conn:
            row = conn.execute(_entry_select().where(_a.c.id == log_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def summary(self, now: datetime, days: int = 30, top: int = 10) -> list[dict]:
        """Per-action totals for the last `days` days, busiest first."""
        total = func.count().label("total")
        query = (
            select(
                _a.c.action,
                total,
                func.sum(case((_a.c.status == SUCCESS, 1), else_=0)).label("success"),
                func.sum(case((_a.c.status == FAILED, 1), else_=0)).label("failed"),
            )
            .where(_a.c.created_at >= to_iso(now - timedelta(days=days)))
            .group_by(_a.c.action)
            .order_by(total.desc(), _a.c.action)
            .limit(top)
        )
        with connect(self.engine) as conn:
            rows = conn.execute(query).fetchall()
        return [
            {"action": r.action, "total": r.total, "success": r.success or 0, "failed": r.failed or 0} for r in rows
        ]


def _row_to_entry(row) -> AuditLogEntry:
    full_name = f"{row.first_name or ''} {row.last_name or ''}".strip() or None
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        branch_id=row.branch_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        status=row.status,
        created_at=row.created_at,
        username=row.username,
        full_name=full_name,
        branch_name=row.branch_name,
    )
