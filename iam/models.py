"""
iam/models.py -- Domain dataclasses for the identity graph.

Project is the tenancy root. Roles, memberships, service accounts and every
binding carry a project_id; repositories never return one across a
mismatched project id.

Layer rule: no imports from api/, fleet/, or liveness/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass
class Project:
    name: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class Role:
    """A named, project-scoped bundle of permissions.

    config is the raw JSON permission document (see iam/permissions.py). It
    is validated on write and parsed again by the resolver on every read.
    """

    project_id: str
    name: str
    description: str = ""
    config: str = '{"rules": []}'
    id: str | None = None
    created_at: str | None = None


@dataclass
class Membership:
    """Tenancy link between a user and a project. Grants nothing by itself."""

    user_id: str
    project_id: str
    created_at: str | None = None


@dataclass
class MembershipRoleBinding:
    user_id: str
    project_id: str
    role_id: str
    created_at: str | None = None


@dataclass
class ServiceAccount:
    project_id: str
    name: str
    description: str = ""
    id: str | None = None
    created_at: str | None = None


@dataclass
class ServiceAccountAccessKey:
    project_id: str
    service_account_id: str
    hash: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class ServiceAccountRoleBinding:
    service_account_id: str
    role_id: str
    project_id: str
    created_at: str | None = None


class PrincipalKind(str, Enum):
    USER = "user"
    SERVICE_ACCOUNT = "service_account"


@dataclass(frozen=True)
class Principal:
    """An authenticated actor the resolver can authorize.

    project_id is set for service accounts (they live inside one project) and
    None for users (their projects come from memberships).
    """

    kind: PrincipalKind
    id: str
    project_id: str | None = None

    @classmethod
    def user(cls, user_id: str) -> "Principal":
        return cls(PrincipalKind.USER, user_id)

    @classmethod
    def service_account(cls, service_account_id: str, project_id: str) -> "Principal":
        return cls(PrincipalKind.SERVICE_ACCOUNT, service_account_id, project_id)
