"""
audit/export.py -- CSV rendering of audit entries, streamed row by row.

Security: cells starting with =, +, - or @ are prefixed with a tab so
spreadsheet applications treat them as text, not formulas (CWE-1236). Every
user-controlled column (usernames, resources, user agents) goes through
_sanitize_csv_cell().
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Iterator
from datetime import date

from audit.models import AuditLogEntry

HEADERS = ["Timestamp", "User", "Action", "Resource", "Status", "IP Address", "Branch"]

_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value) -> str:
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def export_filename(today: date) -> str:
    return f"audit_logs_{today.isoformat()}.csv"


def _line(cells: list) -> str:
    buf = io.StringIO()
    csv.writer(buf).writerow([_sanitize_csv_cell(c) for c in cells])
    return buf.getvalue()


def iter_csv(entries: Iterable[AuditLogEntry]) -> Iterator[str]:
    """Yield the header line, then one CSV line per entry."""
    yield _line(HEADERS)
    for entry in entries:
        yield _line(
            [
                entry.created_at,
                entry.username or entry.full_name or "System",
                entry.action,
                entry.resource or "",
                entry.status,
                entry.ip_address or "",
                entry.branch_name or "",
            ]
        )
