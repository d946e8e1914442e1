"""
auth/schema.py -- SQLAlchemy Core table definitions for the portal database.

One MetaData holds the credential tables and the audit_logs table so a single
create_all() builds the whole schema and audit rows can reference users.

Conventions:
  Timestamps are ISO-8601 TEXT written through core.time_utils.to_iso().
  Booleans are INTEGER 0/1 (SQLite has no native bool).
  All queries built on these tables use bound parameters.

The partial unique index on reactivation_requests backs the "at most one
pending request per user" rule at the database level.
"""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, text
from sqlalchemy.engine import Engine

metadata = MetaData()

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),  # "action:resource"
    Column("resource", String(50), nullable=False),
    Column("action", String(50), nullable=False),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

branches = Table(
    "branches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("location", String(100), nullable=False, unique=True),  # normalised upper-case
    Column("is_main_branch", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("employee_id", String(20), unique=True),
    Column("phone_number", String(30)),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("branch_id", Integer, ForeignKey("branches.id")),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("last_profile_update", String(32)),
    Column("last_password_change", String(32)),
    Column("created_at", String(32), nullable=False),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("device_info", Text),
    Column("ip_address", String(45)),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

reactivation_codes = Table(
    "reactivation_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("code", String(6), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

reactivation_requests = Table(
    "reactivation_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("reviewed_by", Integer, ForeignKey("users.id")),
    Column("review_notes", Text),
    Column("reviewed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

Index(
    "ux_reactivation_requests_pending",
    reactivation_requests.c.user_id,
    unique=True,
    sqlite_where=text("status = 'pending'"),
    postgresql_where=text("status = 'pending'"),
)

# One counter per employee-id prefix (MC, FO, IT), shared across branches.
employee_sequences = Table(
    "employee_sequences",
    metadata,
    Column("prefix", String(10), primary_key=True),
    Column("last_value", Integer, nullable=False, server_default="0"),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("branch_id", Integer),
    Column("action", String(100), nullable=False),
    Column("resource", String(100)),
    Column("resource_id", String(100)),
    Column("details", Text),  # JSON blob
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("status", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
)

Index("ix_audit_logs_created_at", audit_logs.c.created_at)
Index("ix_audit_logs_action", audit_logs.c.action)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)
