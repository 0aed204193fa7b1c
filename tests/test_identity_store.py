"""Unit tests for iam/store.py -- projects, roles, memberships, service accounts, bindings.

Covers:
- lookup by name is scoped to the project and raises the kind's NotFound
- get by id under the wrong project raises NotFound rather than leaking the record
- role configs are validated on create and update
- bindings reject a role or a principal from another project (ValidationError)
- duplicate bindings and duplicate names are ConflictError
- deleting a membership leaves its bindings in place
- bootstrap_project() is all-or-nothing
"""

import pytest

from auth.tokens import hash_password
from core.errors import (
    ConflictError,
    MembershipNotFoundError,
    ProjectNotFoundError,
    RoleNotFoundError,
    ServiceAccountAccessKeyNotFoundError,
    ServiceAccountNotFoundError,
    ValidationError,
)
from iam.permissions import ADMIN_CONFIG
from iam.store import Memberships, bootstrap_project

VIEWER_CONFIG = '{"rules": [{"resources": ["*"], "actions": ["read"]}]}'

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def acme(stores):
    return stores.projects.create_project("acme")


@pytest.fixture
def globex(stores):
    return stores.projects.create_project("globex")


@pytest.fixture
def member(stores, acme):
    user = stores.users.create_user("member@example.com", hash_password("member-pass"))
    stores.memberships.create_membership(user.id, acme.id)
    return user


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class TestProjects:
    def test_lookup_by_name(self, stores, acme) -> None:
        assert stores.projects.lookup_project("acme").id == acme.id
        assert stores.projects.get_project(acme.id).name == "acme"

    def test_unknown_project(self, stores) -> None:
        with pytest.raises(ProjectNotFoundError):
            stores.projects.lookup_project("initech")

    def test_duplicate_name_is_conflict(self, stores, acme) -> None:
        with pytest.raises(ConflictError):
            stores.projects.create_project("acme")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoles:
    def test_lookup_is_scoped_to_project(self, stores, acme, globex) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        assert stores.roles.lookup_role("viewer", acme.id).id == role.id
        with pytest.raises(RoleNotFoundError):
            stores.roles.lookup_role("viewer", globex.id)

    def test_get_under_other_project_is_not_found(self, stores, acme, globex) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        with pytest.raises(RoleNotFoundError):
            stores.roles.get_role(role.id, globex.id)

    def test_same_name_allowed_in_different_projects(self, stores, acme, globex) -> None:
        stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        stores.roles.create_role(globex.id, "viewer", "", VIEWER_CONFIG)
        with pytest.raises(ConflictError):
            stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)

    @pytest.mark.parametrize(
        "config",
        [
            "not json",
            '{"rules": [{"resources": [], "actions": ["read"]}]}',
            '{"rules": [{"resources": ["*"]}]}',
            '{"rules": [], "extra": true}',
        ],
    )
    def test_malformed_config_rejected(self, stores, acme, config) -> None:
        with pytest.raises(ValidationError):
            stores.roles.create_role(acme.id, "broken", "", config)

    def test_update_and_delete(self, stores, acme) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        updated = stores.roles.update_role(role.id, acme.id, "reader", "reads things", ADMIN_CONFIG)
        assert (updated.name, updated.description, updated.config) == ("reader", "reads things", ADMIN_CONFIG)
        with pytest.raises(ValidationError):
            stores.roles.update_role(role.id, acme.id, "reader", "", "{}}")

        stores.roles.delete_role(role.id, acme.id)
        with pytest.raises(RoleNotFoundError):
            stores.roles.get_role(role.id, acme.id)


# ---------------------------------------------------------------------------
# Memberships and membership role bindings
# ---------------------------------------------------------------------------


class TestMembershipBindings:
    def test_bind_role_from_same_project(self, stores, acme, member) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        stores.membership_role_bindings.create_membership_role_binding(member.id, acme.id, role.id)
        bindings = stores.membership_role_bindings.list_membership_role_bindings(member.id, acme.id)
        assert [b.role_id for b in bindings] == [role.id]

    def test_role_from_other_project_is_rejected(self, stores, acme, globex, member) -> None:
        foreign = stores.roles.create_role(globex.id, "viewer", "", VIEWER_CONFIG)
        with pytest.raises(ValidationError):
            stores.membership_role_bindings.create_membership_role_binding(member.id, acme.id, foreign.id)

    def test_non_member_is_rejected(self, stores, acme) -> None:
        outsider = stores.users.create_user("outsider@example.com", hash_password("outsider-pass"))
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        with pytest.raises(ValidationError):
            stores.membership_role_bindings.create_membership_role_binding(outsider.id, acme.id, role.id)

    def test_duplicate_binding_is_conflict(self, stores, acme, member) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        stores.membership_role_bindings.create_membership_role_binding(member.id, acme.id, role.id)
        with pytest.raises(ConflictError):
            stores.membership_role_bindings.create_membership_role_binding(member.id, acme.id, role.id)

    def test_deleting_membership_keeps_bindings(self, stores, acme, member) -> None:
        role = stores.roles.create_role(acme.id, "viewer", "", VIEWER_CONFIG)
        stores.membership_role_bindings.create_membership_role_binding(member.id, acme.id, role.id)

        stores.memberships.delete_membership(member.id, acme.id)
        with pytest.raises(MembershipNotFoundError):
            stores.memberships.get_membership(member.id, acme.id)
        assert len(stores.membership_role_bindings.list_membership_role_bindings(member.id, acme.id)) == 1

    def test_list_memberships(self, stores, acme, globex, member) -> None:
        stores.memberships.create_membership(member.id, globex.id)
        assert {m.project_id for m in stores.memberships.list_memberships_by_user(member.id)} == {acme.id, globex.id}
        assert [m.user_id for m in stores.memberships.list_memberships_by_project(acme.id)] == [member.id]
        with pytest.raises(ConflictError):
            stores.memberships.create_membership(member.id, acme.id)


# ---------------------------------------------------------------------------
# Service accounts
# ---------------------------------------------------------------------------


class TestServiceAccounts:
    def test_lookup_get_update(self, stores, acme, globex) -> None:
        sa = stores.service_accounts.create_service_account(acme.id, "ci", "build bot")
        assert stores.service_accounts.lookup_service_account("ci", acme.id).id == sa.id
        with pytest.raises(ServiceAccountNotFoundError):
            stores.service_accounts.get_service_account(sa.id, globex.id)

        updated = stores.service_accounts.update_service_account(sa.id, acme.id, "deployer", "deploys")
        assert updated.name == "deployer"
        assert [s.name for s in stores.service_accounts.list_service_accounts(acme.id)] == ["deployer"]

    def test_binding_across_projects_is_rejected(self, stores, acme, globex) -> None:
        sa = stores.service_accounts.create_service_account(acme.id, "ci")
        foreign = stores.roles.create_role(globex.id, "viewer", "", VIEWER_CONFIG)
        with pytest.raises(ValidationError):
            stores.service_account_role_bindings.create_service_account_role_binding(sa.id, foreign.id, acme.id)
        with pytest.raises(ValidationError):
            stores.service_account_role_bindings.create_service_account_role_binding(sa.id, foreign.id, globex.id)

    def test_delete_revokes_access_keys(self, stores, acme) -> None:
        sa = stores.service_accounts.create_service_account(acme.id, "ci")
        stores.service_account_access_keys.create_service_account_access_key(acme.id, sa.id, "sak-hash")

        stores.service_accounts.delete_service_account(sa.id, acme.id)
        with pytest.raises(ServiceAccountAccessKeyNotFoundError):
            stores.service_account_access_keys.validate_service_account_access_key("sak-hash")


# ---------------------------------------------------------------------------
# Project bootstrap
# ---------------------------------------------------------------------------


class TestBootstrapProject:
    def test_owner_gets_admin_binding(self, stores) -> None:
        owner = stores.users.create_user("owner@example.com", hash_password("owner-pass"))
        project, role = bootstrap_project(stores.engine, "acme", owner.id)

        assert role.name == "admin"
        assert stores.memberships.get_membership(owner.id, project.id)
        bindings = stores.membership_role_bindings.list_membership_role_bindings(owner.id, project.id)
        assert [b.role_id for b in bindings] == [role.id]

    def test_failure_leaves_nothing_behind(self, stores, monkeypatch) -> None:
        owner = stores.users.create_user("owner@example.com", hash_password("owner-pass"))

        def boom(self, user_id, project_id):
            raise RuntimeError("interrupted")

        monkeypatch.setattr(Memberships, "create_membership", boom)
        with pytest.raises(RuntimeError):
            bootstrap_project(stores.engine, "acme", owner.id)
        with pytest.raises(ProjectNotFoundError):
            stores.projects.lookup_project("acme")
