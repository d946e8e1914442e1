"""
api/routes/v1/audit.py -- Audit log viewing and export (head admin only).

Routes:
  GET /api/v1/audit-logs             -- filtered, paginated, newest first
  GET /api/v1/audit-logs/summary     -- per-action totals for the last N days
  GET /api/v1/audit-logs/export/csv  -- streamed CSV of every matching entry
  GET /api/v1/audit-logs/{log_id}    -- single entry

Read failures on the list and summary routes are logged and answered with an
empty result rather than an error, so the admin screen stays usable while the
database is struggling. The detail route answers 404 in the same situation.

/summary and /export/csv are declared before /{log_id} so the literal paths
win the match.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError

from api.audit_route import AuditedRoute, audited
from api.models import AuditLogEnvelope, AuditLogPage, AuditLogResponse, AuditSummary, AuditSummaryRow, Pagination
from audit.export import export_filename, iter_csv
from audit.store import DEFAULT_LIMIT, MAX_LIMIT, AuditQuery, AuditStore
from auth.dependencies import require_admin
from auth.errors import NotFound
from auth.models import Identity
from core.errors import StoreUnavailable
from core.time_utils import utcnow

logger = logging.getLogger("coopportal.api.audit")

router = APIRouter(route_class=AuditedRoute)


def _audit_query(
    event_type: Optional[str] = Query(None, alias="eventType"),
    user: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    status: Optional[str] = Query(None, pattern="^(success|failed)$"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
) -> AuditQuery:
    return AuditQuery(
        event_type=event_type,
        user=user,
        resource=resource,
        date_from=date_from,
        date_to=date_to,
        status=status,
        limit=limit,
        offset=offset,
    )


@router.get("/audit-logs", response_model=AuditLogPage)
def list_audit_logs(
    request: Request,
    q: AuditQuery = Depends(_audit_query),
    identity: Identity = Depends(require_admin),
) -> AuditLogPage:
    store: AuditStore = request.app.state.audit_store
    try:
        entries, total = store.query(q)
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.error("Audit log query failed: %s", exc)
        entries, total = [], 0
    return AuditLogPage(
        logs=[AuditLogResponse.from_entry(e) for e in entries],
        pagination=Pagination(
            total=total,
            limit=q.limit,
            offset=q.offset,
            total_pages=math.ceil(total / q.limit) if total else 0,
        ),
    )


@router.get("/audit-logs/summary", response_model=AuditSummary)
def audit_summary(
    request: Request,
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(require_admin),
) -> AuditSummary:
    store: AuditStore = request.app.state.audit_store
    try:
        rows = store.summary(utcnow(), days=days)
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.error("Audit summary query failed: %s", exc)
        rows = []
    return AuditSummary(days=days, summary=[AuditSummaryRow(**row) for row in rows])


@router.get("/audit-logs/export/csv")
@audited("download_audit_logs", "audit_logs")
def export_audit_logs(
    request: Request,
    q: AuditQuery = Depends(_audit_query),
    identity: Identity = Depends(require_admin),
) -> StreamingResponse:
    store: AuditStore = request.app.state.audit_store
    filename = export_filename(utcnow().date())
    return StreamingResponse(
        iter_csv(store.iter_entries(q)),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/audit-logs/{log_id}", response_model=AuditLogEnvelope)
def get_audit_log(request: Request, log_id: int, identity: Identity = Depends(require_admin)) -> AuditLogEnvelope:
    store: AuditStore = request.app.state.audit_store
    try:
        entry = store.get(log_id)
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.error("Audit log lookup failed for %d: %s", log_id, exc)
        entry = None
    if entry is None:
        raise NotFound("Audit log not found.")
    return AuditLogEnvelope(log=AuditLogResponse.from_entry(entry))
