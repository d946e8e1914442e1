"""
auth/ratelimit.py -- Failed-login throttling behind an injectable interface.

LoginRateLimiter is the contract the session manager depends on. The
in-memory implementation is per-process and best-effort: counters reset on
restart and are not shared between instances. A multi-instance deployment
should provide an implementation backed by a shared store.

This sits in front of the password check and never replaces it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from core.time_utils import Clock, utcnow


class LoginRateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...

    def retry_after(self, key: str) -> int: ...

    def record_failure(self, key: str) -> None: ...

    def reset(self, key: str) -> None: ...


@dataclass
class _Attempts:
    count: int
    first_at: datetime
    locked_until: datetime | None = None


class InMemoryLoginRateLimiter:
    """Counts failures per key inside a window; locks the key once max_attempts is hit."""

    def __init__(self, max_attempts: int, lockout: timedelta, clock: Clock = utcnow) -> None:
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._clock = clock
        self._attempts: dict[str, _Attempts] = {}
        self._lock = threading.Lock()

    def _current(self, key: str, now: datetime) -> _Attempts | None:
        entry = self._attempts.get(key)
        if entry is None:
            return None
        expired_window = entry.locked_until is None and now - entry.first_at >= self.lockout
        expired_lock = entry.locked_until is not None and now >= entry.locked_until
        if expired_window or expired_lock:
            del self._attempts[key]
            return None
        return entry

    def allow(self, key: str) -> bool:
        with self._lock:
            entry = self._current(key, self._clock())
            return entry is None or entry.locked_until is None

    def retry_after(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            entry = self._current(key, now)
            if entry is None or entry.locked_until is None:
                return 0
            return max(int((entry.locked_until - now).total_seconds()), 1)

    def record_failure(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            entry = self._current(key, now)
            if entry is None:
                entry = self._attempts[key] = _Attempts(count=0, first_at=now)
            entry.count += 1
            if entry.count >= self.max_attempts:
                entry.locked_until = now + self.lockout

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)
