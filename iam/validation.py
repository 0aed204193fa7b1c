"""
iam/validation.py -- Cross-entity invariant checks for identity-graph writes.

Some invariants are not natural database constraints: a binding's role must
live in the same project as the binding, which is a match on two columns of
two different tables. Every write path that creates a binding calls these
functions inside its transaction, so the check and the insert commit
together.

Each function raises core.errors.ValidationError naming the broken rule.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.engine import Connection, Row

from core.errors import ValidationError


def require_role_in_project(conn: Connection, roles, role_id: str, project_id: str) -> Row:
    """The role must exist and belong to project_id."""
    row = conn.execute(select(roles).where(roles.c.id == role_id)).fetchone()
    if row is None:
        raise ValidationError(f"role {role_id} does not exist")
    if row.project_id != project_id:
        raise ValidationError(f"role {role_id} belongs to a different project")
    return row


def require_membership(conn: Connection, memberships, user_id: str, project_id: str) -> Row:
    """The user must be a member of project_id before receiving a role there."""
    row = conn.execute(
        select(memberships).where((memberships.c.user_id == user_id) & (memberships.c.project_id == project_id))
    ).fetchone()
    if row is None:
        raise ValidationError(f"user {user_id} is not a member of project {project_id}")
    return row


def require_service_account_in_project(
    conn: Connection, service_accounts, service_account_id: str, project_id: str
) -> Row:
    """The service account must exist and belong to project_id."""
    row = conn.execute(select(service_accounts).where(service_accounts.c.id == service_account_id)).fetchone()
    if row is None or row.project_id != project_id:
        raise ValidationError(f"service account {service_account_id} is not in project {project_id}")
    return row
