"""
tests/conftest.py -- Shared fixtures for portal unit and integration tests.

This module provides:
  - FakeClock: controllable clock injected into every service
  - RecordingMailer / RecordingNotifier: capture outbound messages
  - store: seeded CredentialStore over a fresh SQLite file
  - seeded: a head admin, a branch clerk, a main-branch clerk and a
    deactivated branch finance officer, all sharing PASSWORD
  - portal: TestClient over the real app with a patched lifespan that wires
    the test collaborators into app.state

Design: SQLite files under tmp_path rather than in-memory databases, because
TestClient runs sync route handlers in a thread pool and the audit recorder
writes from its own thread; every connection must see the same database.

DEBUG and RATE_LIMIT_ENABLED must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY and the slowapi limiter is built
disabled.

bcrypt is deliberately slow, so every seeded user reuses one hash computed at
import time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_state
from auth import schema
from auth.models import Branch, User
from auth.outbound import OutboundEmail
from auth.schema import create_schema
from auth.store import CredentialStore, normalize_location
from auth.tokens import hash_password
from core.database import make_engine, transaction
from core.time_utils import to_iso

PASSWORD = "Passw0rd!"
PASSWORD_HASH = hash_password(PASSWORD)
EMAIL_DOMAIN = "imvcmpc.coop"


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, OutboundEmail]] = []
        self.fail = False

    def send(self, to_email: str, message: OutboundEmail) -> bool:
        if self.fail:
            return False
        self.sent.append((to_email, message))
        return True

    @property
    def last(self) -> OutboundEmail:
        return self.sent[-1][1]


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[tuple[int, str, str, str]] = []

    def notify(self, user_id: int, title: str, message: str, category: str = "system") -> None:
        self.notifications.append((user_id, title, message, category))

    def titles_for(self, user_id: int) -> list[str]:
        return [n[1] for n in self.notifications if n[0] == user_id]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def add_branch(store: CredentialStore, location: str) -> Branch:
    normalized = normalize_location(location)
    with transaction(store.engine) as conn:
        branch_id = conn.execute(
            schema.branches.insert().values(
                name=normalized.title(),
                location=normalized,
                is_main_branch=0,
                created_at=to_iso(datetime.now(timezone.utc)),
            )
        ).inserted_primary_key[0]
    return store.get_branch(branch_id)


def main_branch(store: CredentialStore) -> Branch:
    return next(b for b in store.list_branches() if b.is_main_branch)


def add_user(
    store: CredentialStore,
    username: str,
    role: str,
    branch_id: int | None,
    *,
    active: bool = True,
    email: str | None = None,
    first_name: str = "",
    last_name: str = "",
) -> User:
    user = User(
        username=username,
        email=email or f"{username}@{EMAIL_DOMAIN}",
        role_id=store.get_role_by_name(role).id,
        password_hash=PASSWORD_HASH,
        first_name=first_name or username.title(),
        last_name=last_name or "Tester",
        branch_id=branch_id,
        is_active=active,
    )
    user_id = store.create_user(user, datetime.now(timezone.utc))
    return store.get_user_by_id(user_id)


@dataclass
class Seeded:
    admin: User
    clerk: User
    main_clerk: User
    inactive: User
    branch: Branch
    main: Branch
    extra: dict[str, User] = field(default_factory=dict)


def seed_users(store: CredentialStore) -> Seeded:
    main = main_branch(store)
    branch = add_branch(store, "Rosario")
    return Seeded(
        admin=add_user(store, "ithead", "it_head", main.id, first_name="Ines", last_name="Head"),
        clerk=add_user(store, "rclerk", "marketing_clerk", branch.id, first_name="Rosa", last_name="Clerk"),
        main_clerk=add_user(store, "mclerk", "marketing_clerk", main.id, first_name="Mario", last_name="Clerk"),
        inactive=add_user(
            store,
            "rfinance",
            "finance_officer",
            branch.id,
            active=False,
            first_name="Fe",
            last_name="Officer",
        ),
        branch=branch,
        main=main,
    )


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'portal.db'}")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> CredentialStore:
    s = CredentialStore(engine)
    s.seed_reference_data()
    return s


@pytest.fixture
def seeded(store) -> Seeded:
    return seed_users(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, mailer, notifier, clock):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real task
    to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, engine, mailer=mailer, notifier=notifier, clock=clock)
        app.state.audit_recorder.start()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.audit_recorder.stop()

    return test_lifespan


@dataclass
class Portal:
    client: TestClient
    store: CredentialStore
    users: Seeded
    clock: FakeClock
    mailer: RecordingMailer
    notifier: RecordingNotifier

    def token_for(self, user: User) -> str:
        sessions = self.client.app.state.session_manager
        fresh = self.store.get_user_by_id(user.id)
        return self.client.app.state.token_codec.issue_access_token(sessions.resolve_identity(fresh))

    def auth(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_for(user)}"}

    def flush_audit(self) -> None:
        self.client.app.state.audit_recorder.flush()


@pytest.fixture
def portal(engine, clock, mailer, notifier) -> Generator[Portal, None, None]:
    """Yield a Portal over the real app with isolated stores and collaborators."""
    app.router.lifespan_context = _patch_lifespan(engine, mailer, notifier, clock)
    with TestClient(app, raise_server_exceptions=False) as client:
        store = client.app.state.credential_store
        yield Portal(
            client=client,
            store=store,
            users=seed_users(store),
            clock=clock,
            mailer=mailer,
            notifier=notifier,
        )
