"""
audit/recorder.py -- Out-of-band audit writer: bounded queue + one worker thread.

Flow:
  api/audit_route.py builds an AuditEvent after the handler returns and
  submits it from a response background task, i.e. after the response bytes
  are sent. submit() never blocks: when the queue is full the event is
  dropped and a warning logged. The worker thread resolves the actor, builds
  the detail blob, runs the action's enricher and inserts the row.

  A failed insert is logged with traceback and the worker moves on; the
  caller's response was committed long before.

Shutdown: stop() enqueues a sentinel and waits up to the configured timeout
for the worker to drain everything queued ahead of it.

Ordering between a response and its audit row is not guaranteed. Tests call
flush(), which returns once every event submitted so far has been handled.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any

from audit.enrichers import enrich
from audit.models import AuditEvent, AuditLogEntry
from audit.store import AuditStore
from auth.store import CredentialStore
from core.time_utils import Clock, to_iso, utcnow

logger = logging.getLogger("coopportal.audit")

_REDACTED = "[REDACTED]"
_SENSITIVE_MARKERS = ("password", "token", "code", "secret")
_STOP = object()


def redact(value: Any) -> Any:
    """Copy of value with secrets masked at any depth."""
    if isinstance(value, dict):
        return {
            k: _REDACTED if any(m in str(k).lower() for m in _SENSITIVE_MARKERS) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class AuditRecorder:
    def __init__(
        self,
        audit_store: AuditStore,
        credential_store: CredentialStore,
        maxsize: int = 1000,
        clock: Clock = utcnow,
    ) -> None:
        self.audit_store = audit_store
        self.credential_store = credential_store
        self.clock = clock
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="audit-recorder", daemon=True)
        self._thread.start()
        logger.info("Audit recorder started (queue size %d)", self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.error("Audit queue still full at shutdown; %d event(s) will be lost", self._queue.qsize())
            return
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.error("Audit recorder did not drain within %.1fs", timeout)
        else:
            logger.info("Audit recorder stopped (dropped=%d)", self.dropped)
        self._thread = None

    def flush(self) -> None:
        """Block until every event submitted so far has been written or failed."""
        if self._thread is None or not self._thread.is_alive():
            self._drain_inline()
            return
        self._queue.join()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit(self, event: AuditEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Audit queue full -- dropped action=%s path=%s", event.action, event.path)
            return False
        return True

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def _drain_inline(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if item is not _STOP:
                    self._write(item)
            finally:
                self._queue.task_done()

    def _write(self, event: AuditEvent) -> None:
        try:
            self.audit_store.insert(self.build_entry(event))
        except Exception:
            logger.exception("Failed to write audit entry action=%s path=%s", event.action, event.path)

    def build_entry(self, event: AuditEvent) -> AuditLogEntry:
        user_id = event.user_id
        branch_id = event.branch_id
        if user_id is None and event.action == "login":
            user_id, branch_id = self._resolve_login_actor(event)

        details: dict[str, Any] = {
            "method": event.method,
            "url": event.path,
            "params": event.path_params,
            "query": event.query,
            "body": redact(event.body),
            "status": event.status_code,
        }
        details = enrich(event, details, self.credential_store)

        return AuditLogEntry(
            user_id=user_id,
            branch_id=branch_id,
            action=event.action,
            resource=event.resource,
            resource_id=event.resource_id,
            details=details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            status=event.status,
            created_at=to_iso(self.clock()),
        )

    def _resolve_login_actor(self, event: AuditEvent) -> tuple[int | None, int | None]:
        """Response payload first, then a lookup by the submitted username."""
        user = event.response.get("user")
        if isinstance(user, dict) and user.get("id") is not None:
            return user.get("id"), user.get("branch_id")
        username = event.body.get("username")
        if not username:
            return None, None
        try:
            found = self.credential_store.get_user_by_login(str(username))
        except Exception:
            logger.warning("Audit actor lookup failed for login", exc_info=True)
            return None, None
        if found is None:
            return None, None
        return found.id, found.branch_id
