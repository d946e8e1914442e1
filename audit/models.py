"""
audit/models.py -- Audit message, stored entry and handler outcome types.

AuditEvent is what the HTTP layer hands to the recorder: plain data captured
from the request and response, no framework objects. AuditLogEntry is a row
of the append-only audit_logs table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SUCCESS = "success"
FAILED = "failed"


class AuditOutcome(str, Enum):
    """Returned by a handler to say whether its call should be logged.

    COMPLETED_SUPPRESS_LOGGING is used when an inner operation already wrote
    the entry that describes what really happened.
    """

    COMPLETED = "completed"
    COMPLETED_SUPPRESS_LOGGING = "completed_suppress_logging"


@dataclass
class AuditEvent:
    action: str
    resource: str | None
    method: str
    path: str
    status_code: int
    user_id: int | None = None
    branch_id: int | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    body: dict[str, Any] = field(default_factory=dict)
    path_params: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return SUCCESS if self.status_code < 400 else FAILED


@dataclass
class AuditLogEntry:
    action: str
    status: str
    created_at: str
    id: int | None = None
    user_id: int | None = None
    branch_id: int | None = None
    resource: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    # Joined for display.
    username: str | None = None
    full_name: str | None = None
    branch_name: str | None = None
