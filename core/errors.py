"""
core/errors.py -- Base exception for every failure the portal reports to a caller.

Each subclass pins an HTTP status and a machine-readable code. Services raise
them; api/main.py renders them into the shared error envelope. Services never
build HTTP responses themselves.

context() returns only fields that are safe to show the caller (remaining
wait time, required vs. actual role). Internal detail goes to the log.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    status_code: int = 400
    code: str = "BAD_REQUEST"
    message: str = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def context(self) -> dict[str, Any]:
        return {}


class StoreUnavailable(PortalError):
    """The database refused a connection or the pool did not hand one out in time."""

    status_code = 503
    code = "STORE_UNAVAILABLE"
    message = "The service is temporarily unavailable. Please try again shortly."
