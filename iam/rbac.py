"""
iam/rbac.py -- Role-based authorization across users and service accounts.

Authorizer answers one question: may this principal perform this capability
in this project?

Resolution:
  1. Tenancy. A user needs a Membership in the project; a service account
     must belong to the project. Otherwise DENY -- with no distinction
     between "project does not exist" and "not yours".
  2. Bindings. MembershipRoleBindings for (user, project), or
     ServiceAccountRoleBindings for (service account, project).
  3. Union. Each bound role's permission document contributes its grants;
     the effective set is the union (OR semantics, no explicit deny, no
     precedence). Duplicate bindings collapse because grants are a set.
  4. No bindings -> empty set -> DENY everything. Membership alone grants
     nothing.

Fail-closed: a binding whose role was deleted, or whose role document no
longer parses, contributes nothing and logs a warning. It never aborts the
resolution and never grants by default.

The Authorizer holds repositories, not state; any number of resolutions may
run concurrently.
"""

from __future__ import annotations

import logging
from enum import Enum

from core.errors import (
    DeniedError,
    MembershipNotFoundError,
    RoleNotFoundError,
    ServiceAccountNotFoundError,
    ValidationError,
)
from iam.models import Principal, PrincipalKind
from iam.permissions import Capability, Permissions, parse_config
from iam.store import MembershipRoleBindings, Memberships, Roles, ServiceAccountRoleBindings, ServiceAccounts

logger = logging.getLogger("fleetplane.rbac")


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Authorizer:
    def __init__(
        self,
        roles: Roles,
        memberships: Memberships,
        membership_role_bindings: MembershipRoleBindings,
        service_accounts: ServiceAccounts,
        service_account_role_bindings: ServiceAccountRoleBindings,
    ) -> None:
        self.roles = roles
        self.memberships = memberships
        self.membership_role_bindings = membership_role_bindings
        self.service_accounts = service_accounts
        self.service_account_role_bindings = service_account_role_bindings

    def effective_permissions(self, principal: Principal, project_id: str) -> Permissions:
        """Return the union of grants from every role bound to the principal in the project."""
        role_ids = self._bound_role_ids(principal, project_id)
        permissions = Permissions()
        for role_id in role_ids:
            permissions = permissions.union(self._role_permissions(role_id, project_id))
        return permissions

    def authorize(self, principal: Principal, project_id: str, capability: Capability | str) -> Decision:
        if isinstance(capability, str):
            capability = Capability.parse(capability)
        allowed = self.effective_permissions(principal, project_id).allows(capability)
        decision = Decision.ALLOW if allowed else Decision.DENY
        logger.debug("%s %s %s in %s -> %s", principal.kind.value, principal.id, capability, project_id, decision.value)
        return decision

    def require(self, principal: Principal, project_id: str, capability: Capability | str) -> None:
        """Raise DeniedError unless authorize() allows the capability."""
        if self.authorize(principal, project_id, capability) is Decision.DENY:
            raise DeniedError(project_id, str(capability))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bound_role_ids(self, principal: Principal, project_id: str) -> set[str]:
        if principal.kind is PrincipalKind.USER:
            try:
                self.memberships.get_membership(principal.id, project_id)
            except MembershipNotFoundError:
                return set()
            bindings = self.membership_role_bindings.list_membership_role_bindings(principal.id, project_id)
            return {b.role_id for b in bindings}

        if principal.project_id != project_id:
            return set()
        try:
            self.service_accounts.get_service_account(principal.id, project_id)
        except ServiceAccountNotFoundError:
            return set()
        bindings = self.service_account_role_bindings.list_service_account_role_bindings(principal.id, project_id)
        return {b.role_id for b in bindings}

    def _role_permissions(self, role_id: str, project_id: str) -> Permissions:
        try:
            role = self.roles.get_role(role_id, project_id)
        except RoleNotFoundError:
            logger.warning("Skipping binding to missing role %s in project %s", role_id, project_id)
            return Permissions()
        try:
            config = parse_config(role.config)
        except ValidationError:
            logger.warning("Skipping role %s in project %s: config does not parse", role_id, project_id)
            return Permissions()
        return Permissions.from_config(config)
