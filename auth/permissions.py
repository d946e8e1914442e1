"""
auth/permissions.py -- Role catalogue, seed data and permission matching.

Permissions are "resource:action" strings. "*:*" grants everything. Each role
is defined as (name, display_name, description, employee_prefix,
requires_branch, permissions).

employee_prefix feeds the per-prefix employee id counter in provisioning
(MC001, FO001, MC002, ...). requires_branch=False marks head-office roles
whose users carry no branch.
"""

from __future__ import annotations

from collections.abc import Iterable

WILDCARD = "*:*"

ROLE_DEFINITIONS = [
    (
        "marketing_clerk",
        "Marketing Clerk",
        "Member data entry and basic reporting for a single branch",
        "MC",
        True,
        [
            "read:member_data",
            "write:member_data",
            "read:basic_reports",
            "read:notifications",
            "write:notifications",
        ],
    ),
    (
        "finance_officer",
        "Finance Officer",
        "Financial data, budgets and MCDA analysis for a single branch",
        "FO",
        True,
        [
            "read:member_data",
            "read:financial_data",
            "write:financial_data",
            "read:advanced_reports",
            "write:reports",
            "read:mcda_analysis",
            "write:mcda_analysis",
            "read:budget_data",
            "write:budget_data",
        ],
    ),
    (
        "it_head",
        "IT Head",
        "System administration across all branches",
        "IT",
        False,
        [WILDCARD],
    ),
]

MAIN_BRANCH = ("Main Branch", "IBAAN")

_BY_NAME = {d[0]: d for d in ROLE_DEFINITIONS}


def employee_prefix(role_name: str) -> str:
    definition = _BY_NAME.get(role_name)
    return definition[3] if definition else role_name[:2].upper()


def role_requires_branch(role_name: str) -> bool:
    definition = _BY_NAME.get(role_name)
    return definition[4] if definition else True


def has_permission(role_name: str, permissions: Iterable[str], required: str, head_admin_role: str) -> bool:
    """Head admin always passes; otherwise an exact grant or the wildcard."""
    if role_name == head_admin_role:
        return True
    granted = set(permissions)
    return required in granted or WILDCARD in granted
