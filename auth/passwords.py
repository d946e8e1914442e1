"""
auth/passwords.py -- Password strength policy and self-service cooldowns.

Both are pure functions over Settings and timestamps, shared by the lifecycle
controller (change/reset) and branch-user provisioning.
"""

from __future__ import annotations

from datetime import datetime

from auth.errors import CooldownActive, WeakPassword
from core.config import Settings
from core.time_utils import parse_iso, whole_days_between


def check_strength(password: str, settings: Settings) -> None:
    """Raise WeakPassword naming the first rule the password breaks."""
    if len(password) < settings.password_min_length:
        raise WeakPassword(
            "min_length",
            f"Password must be at least {settings.password_min_length} characters long.",
        )
    if settings.password_require_uppercase and not any(c.isupper() for c in password):
        raise WeakPassword("uppercase", "Password must contain at least one uppercase letter.")
    if settings.password_require_digit and not any(c.isdigit() for c in password):
        raise WeakPassword("digit", "Password must contain at least one number.")
    if settings.password_require_symbol and not any(c in settings.password_symbols for c in password):
        raise WeakPassword(
            "symbol",
            f"Password must contain at least one special character ({settings.password_symbols}).",
        )


def days_remaining(last_change: str | None, cooldown_days: int, now: datetime) -> int:
    """Whole days left before the action is allowed again. 0 when allowed."""
    last = parse_iso(last_change)
    if last is None:
        return 0
    elapsed = whole_days_between(last, now)
    return max(cooldown_days - elapsed, 0)


def enforce_cooldown(last_change: str | None, cooldown_days: int, now: datetime, action: str) -> None:
    remaining = days_remaining(last_change, cooldown_days, now)
    if remaining > 0:
        raise CooldownActive(remaining, action)
