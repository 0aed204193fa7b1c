"""
iam/store.py -- SQLAlchemy Core persistence for the identity graph.

Repositories (one per entity family, each built from an injected Engine):
  Projects, Roles, Memberships, MembershipRoleBindings, ServiceAccounts,
  ServiceAccountAccessKeys, ServiceAccountRoleBindings

Scoping: every Get/Update/Delete on a project-scoped entity takes project_id
and filters on it in SQL. An id that exists under another project raises the
kind's NotFound error -- the same error as an id that does not exist at all.

Bindings are validated by iam/validation.py inside the insert transaction.
Deleting a membership or role does NOT cascade to bindings; the resolver
treats bindings whose membership or role is gone as inert. Re-creating a
membership clears the user's old bindings in that project.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging

from sqlalchemy import Column, MetaData, PrimaryKeyConstraint, String, Table, Text, UniqueConstraint
from sqlalchemy.engine import Engine

from core.db import Repository, create_schema, new_id, now_iso, transaction
from core.errors import (
    MembershipNotFoundError,
    MembershipRoleBindingNotFoundError,
    ProjectNotFoundError,
    RoleNotFoundError,
    ServiceAccountAccessKeyNotFoundError,
    ServiceAccountNotFoundError,
    ServiceAccountRoleBindingNotFoundError,
)
from iam import validation
from iam.models import (
    Membership,
    MembershipRoleBinding,
    Project,
    Role,
    ServiceAccount,
    ServiceAccountAccessKey,
    ServiceAccountRoleBinding,
)
from iam.permissions import ADMIN_CONFIG, parse_config

logger = logging.getLogger("fleetplane.iam")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_projects = Table(
    "projects",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("config", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("project_id", "name", name="uq_role_project_name"),
)

_memberships = Table(
    "memberships",
    metadata,
    Column("user_id", String(32), nullable=False),
    Column("project_id", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "project_id"),
)

_membership_role_bindings = Table(
    "membership_role_bindings",
    metadata,
    Column("user_id", String(32), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("role_id", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "project_id", "role_id"),
)

_service_accounts = Table(
    "service_accounts",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("project_id", "name", name="uq_service_account_project_name"),
)

_service_account_access_keys = Table(
    "service_account_access_keys",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False),
    Column("service_account_id", String(32), nullable=False, index=True),
    Column("hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_service_account_role_bindings = Table(
    "service_account_role_bindings",
    metadata,
    Column("service_account_id", String(32), nullable=False),
    Column("role_id", String(32), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("service_account_id", "role_id", "project_id"),
)


def init_schema(engine: Engine) -> None:
    create_schema(engine, metadata)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class Projects(Repository):
    def create_project(self, name: str) -> Project:
        """Insert a project. Raises ConflictError if the name is taken."""
        project = Project(id=new_id("prj"), name=name, created_at=now_iso())
        with self._tx() as conn:
            conn.execute(_projects.insert().values(id=project.id, name=name, created_at=project.created_at))
        return project

    def get_project(self, id: str) -> Project:
        with self._tx() as conn:
            row = conn.execute(_projects.select().where(_projects.c.id == id)).fetchone()
        if row is None:
            raise ProjectNotFoundError(id)
        return _row_to_project(row)

    def lookup_project(self, name: str) -> Project:
        with self._tx() as conn:
            row = conn.execute(_projects.select().where(_projects.c.name == name)).fetchone()
        if row is None:
            raise ProjectNotFoundError(name)
        return _row_to_project(row)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class Roles(Repository):
    """Repository for project-scoped roles.

    The config document is parsed before every write so a role can never be
    stored with a document the resolver would reject.
    """

    def create_role(self, project_id: str, name: str, description: str, config: str) -> Role:
        parse_config(config)
        role = Role(
            id=new_id("rol"),
            project_id=project_id,
            name=name,
            description=description,
            config=config,
            created_at=now_iso(),
        )
        with self._tx() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role.id,
                    project_id=project_id,
                    name=name,
                    description=description,
                    config=config,
                    created_at=role.created_at,
                )
            )
        return role

    def get_role(self, id: str, project_id: str) -> Role:
        with self._tx() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.id == id) & (_roles.c.project_id == project_id))
            ).fetchone()
        if row is None:
            raise RoleNotFoundError(id)
        return _row_to_role(row)

    def lookup_role(self, name: str, project_id: str) -> Role:
        with self._tx() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.name == name) & (_roles.c.project_id == project_id))
            ).fetchone()
        if row is None:
            raise RoleNotFoundError(name)
        return _row_to_role(row)

    def list_roles(self, project_id: str) -> list[Role]:
        with self._tx() as conn:
            rows = conn.execute(
                _roles.select().where(_roles.c.project_id == project_id).order_by(_roles.c.name)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, id: str, project_id: str, name: str, description: str, config: str) -> Role:
        parse_config(config)
        with self._tx() as conn:
            result = conn.execute(
                _roles.update()
                .where((_roles.c.id == id) & (_roles.c.project_id == project_id))
                .values(name=name, description=description, config=config)
            )
            if result.rowcount == 0:
                raise RoleNotFoundError(id)
            return self.get_role(id, project_id)

    def delete_role(self, id: str, project_id: str) -> None:
        with self._tx() as conn:
            result = conn.execute(_roles.delete().where((_roles.c.id == id) & (_roles.c.project_id == project_id)))
        if result.rowcount == 0:
            raise RoleNotFoundError(id)


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


class Memberships(Repository):
    def create_membership(self, user_id: str, project_id: str) -> Membership:
        """Add a user to a project. Raises ConflictError if already a member.

        Bindings left over from an earlier membership of the same user are
        dropped in the same transaction, so a re-added member starts with no roles.
        """
        membership = Membership(user_id=user_id, project_id=project_id, created_at=now_iso())
        b = _membership_role_bindings.c
        with self._tx() as conn:
            conn.execute(
                _memberships.insert().values(user_id=user_id, project_id=project_id, created_at=membership.created_at)
            )
            stale = conn.execute(
                _membership_role_bindings.delete().where((b.user_id == user_id) & (b.project_id == project_id))
            )
        if stale.rowcount:
            logger.info("Dropped %d stale role binding(s) for %s in %s", stale.rowcount, user_id, project_id)
        return membership

    def get_membership(self, user_id: str, project_id: str) -> Membership:
        with self._tx() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.project_id == project_id)
                )
            ).fetchone()
        if row is None:
            raise MembershipNotFoundError(f"{user_id}/{project_id}")
        return _row_to_membership(row)

    def list_memberships_by_user(self, user_id: str) -> list[Membership]:
        with self._tx() as conn:
            rows = conn.execute(
                _memberships.select().where(_memberships.c.user_id == user_id).order_by(_memberships.c.created_at)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def list_memberships_by_project(self, project_id: str) -> list[Membership]:
        with self._tx() as conn:
            rows = conn.execute(
                _memberships.select()
                .where(_memberships.c.project_id == project_id)
                .order_by(_memberships.c.created_at)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def delete_membership(self, user_id: str, project_id: str) -> None:
        """Remove a user from a project. Role bindings stay in place but grant nothing."""
        with self._tx() as conn:
            result = conn.execute(
                _memberships.delete().where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.project_id == project_id)
                )
            )
        if result.rowcount == 0:
            raise MembershipNotFoundError(f"{user_id}/{project_id}")


class MembershipRoleBindings(Repository):
    def create_membership_role_binding(self, user_id: str, project_id: str, role_id: str) -> MembershipRoleBinding:
        """Bind a project role to a member.

        Raises ValidationError if the role is not in project_id or the user is
        not a member; ConflictError if the binding already exists.
        """
        binding = MembershipRoleBinding(user_id=user_id, project_id=project_id, role_id=role_id, created_at=now_iso())
        with self._tx() as conn:
            validation.require_role_in_project(conn, _roles, role_id, project_id)
            validation.require_membership(conn, _memberships, user_id, project_id)
            conn.execute(
                _membership_role_bindings.insert().values(
                    user_id=user_id, project_id=project_id, role_id=role_id, created_at=binding.created_at
                )
            )
        return binding

    def get_membership_role_binding(self, user_id: str, project_id: str, role_id: str) -> MembershipRoleBinding:
        b = _membership_role_bindings.c
        with self._tx() as conn:
            row = conn.execute(
                _membership_role_bindings.select().where(
                    (b.user_id == user_id) & (b.project_id == project_id) & (b.role_id == role_id)
                )
            ).fetchone()
        if row is None:
            raise MembershipRoleBindingNotFoundError(f"{user_id}/{project_id}/{role_id}")
        return _row_to_membership_role_binding(row)

    def list_membership_role_bindings(self, user_id: str, project_id: str) -> list[MembershipRoleBinding]:
        b = _membership_role_bindings.c
        with self._tx() as conn:
            rows = conn.execute(
                _membership_role_bindings.select()
                .where((b.user_id == user_id) & (b.project_id == project_id))
                .order_by(b.created_at)
            ).fetchall()
        return [_row_to_membership_role_binding(r) for r in rows]

    def delete_membership_role_binding(self, user_id: str, project_id: str, role_id: str) -> None:
        b = _membership_role_bindings.c
        with self._tx() as conn:
            result = conn.execute(
                _membership_role_bindings.delete().where(
                    (b.user_id == user_id) & (b.project_id == project_id) & (b.role_id == role_id)
                )
            )
        if result.rowcount == 0:
            raise MembershipRoleBindingNotFoundError(f"{user_id}/{project_id}/{role_id}")


# ---------------------------------------------------------------------------
# Service accounts
# ---------------------------------------------------------------------------


class ServiceAccounts(Repository):
    def create_service_account(self, project_id: str, name: str, description: str = "") -> ServiceAccount:
        account = ServiceAccount(
            id=new_id("sac"), project_id=project_id, name=name, description=description, created_at=now_iso()
        )
        with self._tx() as conn:
            conn.execute(
                _service_accounts.insert().values(
                    id=account.id,
                    project_id=project_id,
                    name=name,
                    description=description,
                    created_at=account.created_at,
                )
            )
        return account

    def get_service_account(self, id: str, project_id: str) -> ServiceAccount:
        sa = _service_accounts.c
        with self._tx() as conn:
            row = conn.execute(
                _service_accounts.select().where((sa.id == id) & (sa.project_id == project_id))
            ).fetchone()
        if row is None:
            raise ServiceAccountNotFoundError(id)
        return _row_to_service_account(row)

    def lookup_service_account(self, name: str, project_id: str) -> ServiceAccount:
        sa = _service_accounts.c
        with self._tx() as conn:
            row = conn.execute(
                _service_accounts.select().where((sa.name == name) & (sa.project_id == project_id))
            ).fetchone()
        if row is None:
            raise ServiceAccountNotFoundError(name)
        return _row_to_service_account(row)

    def list_service_accounts(self, project_id: str) -> list[ServiceAccount]:
        sa = _service_accounts.c
        with self._tx() as conn:
            rows = conn.execute(
                _service_accounts.select().where(sa.project_id == project_id).order_by(sa.name)
            ).fetchall()
        return [_row_to_service_account(r) for r in rows]

    def update_service_account(self, id: str, project_id: str, name: str, description: str) -> ServiceAccount:
        sa = _service_accounts.c
        with self._tx() as conn:
            result = conn.execute(
                _service_accounts.update()
                .where((sa.id == id) & (sa.project_id == project_id))
                .values(name=name, description=description)
            )
            if result.rowcount == 0:
                raise ServiceAccountNotFoundError(id)
            return self.get_service_account(id, project_id)

    def delete_service_account(self, id: str, project_id: str) -> None:
        """Delete the account and revoke its access keys in one transaction.

        Role bindings are left in place; with the account gone the resolver
        denies everything for it anyway.
        """
        sa = _service_accounts.c
        with self._tx() as conn:
            result = conn.execute(_service_accounts.delete().where((sa.id == id) & (sa.project_id == project_id)))
            if result.rowcount == 0:
                raise ServiceAccountNotFoundError(id)
            conn.execute(
                _service_account_access_keys.delete().where(
                    (_service_account_access_keys.c.service_account_id == id)
                    & (_service_account_access_keys.c.project_id == project_id)
                )
            )


class ServiceAccountAccessKeys(Repository):
    def create_service_account_access_key(
        self, project_id: str, service_account_id: str, hash: str
    ) -> ServiceAccountAccessKey:
        key = ServiceAccountAccessKey(
            id=new_id("sak"),
            project_id=project_id,
            service_account_id=service_account_id,
            hash=hash,
            created_at=now_iso(),
        )
        with self._tx() as conn:
            validation.require_service_account_in_project(conn, _service_accounts, service_account_id, project_id)
            conn.execute(
                _service_account_access_keys.insert().values(
                    id=key.id,
                    project_id=project_id,
                    service_account_id=service_account_id,
                    hash=hash,
                    created_at=key.created_at,
                )
            )
        return key

    def get_service_account_access_key(self, id: str, project_id: str) -> ServiceAccountAccessKey:
        k = _service_account_access_keys.c
        with self._tx() as conn:
            row = conn.execute(
                _service_account_access_keys.select().where((k.id == id) & (k.project_id == project_id))
            ).fetchone()
        if row is None:
            raise ServiceAccountAccessKeyNotFoundError(id)
        return _row_to_service_account_access_key(row)

    def list_service_account_access_keys(
        self, project_id: str, service_account_id: str
    ) -> list[ServiceAccountAccessKey]:
        k = _service_account_access_keys.c
        with self._tx() as conn:
            rows = conn.execute(
                _service_account_access_keys.select()
                .where((k.project_id == project_id) & (k.service_account_id == service_account_id))
                .order_by(k.created_at.desc())
            ).fetchall()
        return [_row_to_service_account_access_key(r) for r in rows]

    def validate_service_account_access_key(self, hash: str) -> ServiceAccountAccessKey:
        with self._tx() as conn:
            row = conn.execute(
                _service_account_access_keys.select().where(_service_account_access_keys.c.hash == hash)
            ).fetchone()
        if row is None:
            raise ServiceAccountAccessKeyNotFoundError()
        return _row_to_service_account_access_key(row)

    def delete_service_account_access_key(self, id: str, project_id: str) -> None:
        k = _service_account_access_keys.c
        with self._tx() as conn:
            result = conn.execute(
                _service_account_access_keys.delete().where((k.id == id) & (k.project_id == project_id))
            )
        if result.rowcount == 0:
            raise ServiceAccountAccessKeyNotFoundError(id)


class ServiceAccountRoleBindings(Repository):
    def create_service_account_role_binding(
        self, service_account_id: str, role_id: str, project_id: str
    ) -> ServiceAccountRoleBinding:
        """Bind a project role to a service account of the same project.

        Raises ValidationError on a project mismatch, ConflictError if the
        binding already exists.
        """
        binding = ServiceAccountRoleBinding(
            service_account_id=service_account_id, role_id=role_id, project_id=project_id, created_at=now_iso()
        )
        with self._tx() as conn:
            validation.require_role_in_project(conn, _roles, role_id, project_id)
            validation.require_service_account_in_project(conn, _service_accounts, service_account_id, project_id)
            conn.execute(
                _service_account_role_bindings.insert().values(
                    service_account_id=service_account_id,
                    role_id=role_id,
                    project_id=project_id,
                    created_at=binding.created_at,
                )
            )
        return binding

    def get_service_account_role_binding(
        self, service_account_id: str, role_id: str, project_id: str
    ) -> ServiceAccountRoleBinding:
        b = _service_account_role_bindings.c
        with self._tx() as conn:
            row = conn.execute(
                _service_account_role_bindings.select().where(
                    (b.service_account_id == service_account_id) & (b.role_id == role_id) & (b.project_id == project_id)
                )
            ).fetchone()
        if row is None:
            raise ServiceAccountRoleBindingNotFoundError(f"{service_account_id}/{role_id}")
        return _row_to_service_account_role_binding(row)

    def list_service_account_role_bindings(
        self, service_account_id: str, project_id: str
    ) -> list[ServiceAccountRoleBinding]:
        b = _service_account_role_bindings.c
        with self._tx() as conn:
            rows = conn.execute(
                _service_account_role_bindings.select()
                .where((b.service_account_id == service_account_id) & (b.project_id == project_id))
                .order_by(b.created_at)
            ).fetchall()
        return [_row_to_service_account_role_binding(r) for r in rows]

    def delete_service_account_role_binding(self, service_account_id: str, role_id: str, project_id: str) -> None:
        b = _service_account_role_bindings.c
        with self._tx() as conn:
            result = conn.execute(
                _service_account_role_bindings.delete().where(
                    (b.service_account_id == service_account_id) & (b.role_id == role_id) & (b.project_id == project_id)
                )
            )
        if result.rowcount == 0:
            raise ServiceAccountRoleBindingNotFoundError(f"{service_account_id}/{role_id}")


# ---------------------------------------------------------------------------
# Project bootstrap
# ---------------------------------------------------------------------------


def bootstrap_project(engine: Engine, name: str, owner_user_id: str) -> tuple[Project, Role]:
    """Create a project whose creator holds an all-powerful 'admin' role.

    Project, role, membership and binding are written in one transaction:
    either the owner ends up able to administer the project or nothing exists.
    """
    with transaction(engine):
        project = Projects(engine).create_project(name)
        role = Roles(engine).create_role(project.id, "admin", "Full access to the project.", ADMIN_CONFIG)
        Memberships(engine).create_membership(owner_user_id, project.id)
        MembershipRoleBindings(engine).create_membership_role_binding(owner_user_id, project.id, role.id)
    logger.info("Project %s bootstrapped for user %s", project.id, owner_user_id)
    return project, role


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_project(row) -> Project:
    return Project(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        description=row.description,
        config=row.config,
        created_at=row.created_at,
    )


def _row_to_membership(row) -> Membership:
    return Membership(user_id=row.user_id, project_id=row.project_id, created_at=row.created_at)


def _row_to_membership_role_binding(row) -> MembershipRoleBinding:
    return MembershipRoleBinding(
        user_id=row.user_id, project_id=row.project_id, role_id=row.role_id, created_at=row.created_at
    )


def _row_to_service_account(row) -> ServiceAccount:
    return ServiceAccount(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        description=row.description,
        created_at=row.created_at,
    )


def _row_to_service_account_access_key(row) -> ServiceAccountAccessKey:
    return ServiceAccountAccessKey(
        id=row.id,
        project_id=row.project_id,
        service_account_id=row.service_account_id,
        hash=row.hash,
        created_at=row.created_at,
    )


def _row_to_service_account_role_binding(row) -> ServiceAccountRoleBinding:
    return ServiceAccountRoleBinding(
        service_account_id=row.service_account_id,
        role_id=row.role_id,
        project_id=row.project_id,
        created_at=row.created_at,
    )
