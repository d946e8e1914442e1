"""
tests/test_ratelimit.py -- Failed-login throttling.

Covers:
  - lock after max_attempts failures, Retry-After counts down, expiry
  - failures outside the window are forgotten
  - keys are independent; reset clears a key
  - HTTP: locked client gets 429 RATE_LIMIT_EXCEEDED with Retry-After
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.ratelimit import InMemoryLoginRateLimiter
from core.config import get_settings


@pytest.fixture
def limiter(clock) -> InMemoryLoginRateLimiter:
    return InMemoryLoginRateLimiter(3, timedelta(minutes=15), clock=clock)


class TestInMemoryLimiter:
    def test_locks_after_max_failures(self, limiter) -> None:
        for _ in range(2):
            limiter.record_failure("10.0.0.1")
        assert limiter.allow("10.0.0.1")
        limiter.record_failure("10.0.0.1")
        assert not limiter.allow("10.0.0.1")
        assert limiter.retry_after("10.0.0.1") == 15 * 60

    def test_retry_after_counts_down_and_expires(self, limiter, clock) -> None:
        for _ in range(3):
            limiter.record_failure("10.0.0.1")
        clock.advance(minutes=10)
        assert limiter.retry_after("10.0.0.1") == 5 * 60
        clock.advance(minutes=5)
        assert limiter.allow("10.0.0.1")
        assert limiter.retry_after("10.0.0.1") == 0

    def test_window_forgets_old_failures(self, limiter, clock) -> None:
        limiter.record_failure("10.0.0.1")
        limiter.record_failure("10.0.0.1")
        clock.advance(minutes=16)
        limiter.record_failure("10.0.0.1")
        assert limiter.allow("10.0.0.1")

    def test_keys_are_independent(self, limiter) -> None:
        for _ in range(3):
            limiter.record_failure("10.0.0.1")
        assert limiter.allow("10.0.0.2")

    def test_reset(self, limiter) -> None:
        for _ in range(3):
            limiter.record_failure("10.0.0.1")
        limiter.reset("10.0.0.1")
        assert limiter.allow("10.0.0.1")


def test_locked_client_gets_429(portal) -> None:
    attempts = get_settings().login_max_attempts
    for _ in range(attempts):
        resp = portal.client.post("/api/v1/auth/login", json={"username": "rclerk", "password": "Wrong-passw0rd"})
        assert resp.status_code == 401
    resp = portal.client.post("/api/v1/auth/login", json={"username": "rclerk", "password": "Passw0rd!"})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(resp.headers["retry-after"]) > 0
