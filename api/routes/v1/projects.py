"""
api/routes/v1/projects.py -- Projects, roles, memberships and membership role bindings.

Routes (all under /api/v1):
  POST   /projects                                             -- any user; caller becomes admin
  GET    /projects/{project}                                   -- projects:read
  GET    /projects/{project}/permissions/{capability}          -- caller's own decision
  POST   /projects/{project}/roles                             -- roles:create
  GET    /projects/{project}/roles                             -- roles:read
  GET    /projects/{project}/roles/{role}                      -- roles:read
  PUT    /projects/{project}/roles/{role}                      -- roles:update
  DELETE /projects/{project}/roles/{role}                      -- roles:delete
  POST   /projects/{project}/memberships                       -- memberships:create
  GET    /projects/{project}/memberships                       -- memberships:read
  DELETE /projects/{project}/memberships/{user_id}             -- memberships:delete
  GET    /projects/{project}/memberships/{user_id}/roles       -- role_bindings:read
  POST   /projects/{project}/memberships/{user_id}/roles/{role}  -- role_bindings:create
  DELETE /projects/{project}/memberships/{user_id}/roles/{role}  -- role_bindings:delete

{project} and {role} are names. Authorization runs before any lookup below
the project, so a denied caller cannot probe for role or user ids.

Deleting a membership leaves its role bindings in place; the resolver ignores
them until the user is a member again.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    MembershipCreate,
    MembershipResponse,
    PermissionCheckResponse,
    ProjectCreate,
    ProjectResponse,
    RoleBindingResponse,
    RoleResponse,
    RoleWrite,
)
from auth.dependencies import get_current_principal, get_current_user, require_capability
from auth.models import User
from core.errors import ProjectNotFoundError
from iam.models import MembershipRoleBinding, Principal, Project, Role
from iam.permissions import Capability
from iam.rbac import Decision
from iam.store import bootstrap_project

router = APIRouter()


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        project_id=role.project_id,
        name=role.name,
        description=role.description,
        config=role.config,
        created_at=role.created_at,
    )


def _binding_response(binding: MembershipRoleBinding) -> RoleBindingResponse:
    return RoleBindingResponse(
        role_id=binding.role_id,
        project_id=binding.project_id,
        user_id=binding.user_id,
        created_at=binding.created_at,
    )


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: Request, body: ProjectCreate, current_user: User = Depends(get_current_user)
) -> ProjectResponse:
    """Create a project with the caller as its first member, bound to an 'admin' role."""
    project, _role = bootstrap_project(request.app.state.stores.engine, body.name, current_user.id)
    return ProjectResponse(id=project.id, name=project.name, created_at=project.created_at)


@router.get("/projects/{project}", response_model=ProjectResponse)
def get_project(
    request: Request, project: Project = Depends(require_capability("projects", "read"))
) -> ProjectResponse:
    stores = request.app.state.stores
    return ProjectResponse(
        id=project.id,
        name=project.name,
        created_at=project.created_at,
        device_count=stores.devices.get_project_device_counts(project.id).all_count,
        application_count=stores.applications.get_project_application_counts(project.id).all_count,
    )


@router.get("/projects/{project}/permissions/{capability}", response_model=PermissionCheckResponse)
def check_permission(
    project: str,
    capability: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> PermissionCheckResponse:
    """Report whether the caller holds a capability ('devices:read' or a bare 'read').

    An unknown project answers deny, the same as a project the caller is not in.
    """
    stores = request.app.state.stores
    parsed = Capability.parse(capability)
    try:
        resolved = stores.projects.lookup_project(project)
    except ProjectNotFoundError:
        decision = Decision.DENY
    else:
        decision = stores.authorizer.authorize(principal, resolved.id, parsed)
    return PermissionCheckResponse(capability=str(parsed), decision=decision.value)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.post("/projects/{project}/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request, body: RoleWrite, project: Project = Depends(require_capability("roles", "create"))
) -> RoleResponse:
    role = request.app.state.stores.roles.create_role(project.id, body.name, body.description, body.config)
    return _role_response(role)


@router.get("/projects/{project}/roles", response_model=list[RoleResponse])
def list_roles(request: Request, project: Project = Depends(require_capability("roles", "read"))) -> list[RoleResponse]:
    return [_role_response(r) for r in request.app.state.stores.roles.list_roles(project.id)]


@router.get("/projects/{project}/roles/{role}", response_model=RoleResponse)
def get_role(
    role: str, request: Request, project: Project = Depends(require_capability("roles", "read"))
) -> RoleResponse:
    return _role_response(request.app.state.stores.roles.lookup_role(role, project.id))


@router.put("/projects/{project}/roles/{role}", response_model=RoleResponse)
def update_role(
    role: str,
    request: Request,
    body: RoleWrite,
    project: Project = Depends(require_capability("roles", "update")),
) -> RoleResponse:
    roles = request.app.state.stores.roles
    existing = roles.lookup_role(role, project.id)
    updated = roles.update_role(existing.id, project.id, body.name, body.description, body.config)
    return _role_response(updated)


@router.delete("/projects/{project}/roles/{role}", status_code=204)
def delete_role(
    role: str, request: Request, project: Project = Depends(require_capability("roles", "delete"))
) -> Response:
    """Delete a role. Bindings that referenced it stop granting anything."""
    roles = request.app.state.stores.roles
    roles.delete_role(roles.lookup_role(role, project.id).id, project.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


@router.post("/projects/{project}/memberships", response_model=MembershipResponse, status_code=201)
def create_membership(
    request: Request,
    body: MembershipCreate,
    project: Project = Depends(require_capability("memberships", "create")),
) -> MembershipResponse:
    """Add an existing user (by email) to the project. Grants nothing until a role is bound."""
    stores = request.app.state.stores
    user = stores.users.get_user_by_email(body.email)
    membership = stores.memberships.create_membership(user.id, project.id)
    return MembershipResponse(user_id=membership.user_id, project_id=project.id, created_at=membership.created_at)


@router.get("/projects/{project}/memberships", response_model=list[MembershipResponse])
def list_memberships(
    request: Request, project: Project = Depends(require_capability("memberships", "read"))
) -> list[MembershipResponse]:
    memberships = request.app.state.stores.memberships.list_memberships_by_project(project.id)
    return [
        MembershipResponse(user_id=m.user_id, project_id=m.project_id, created_at=m.created_at) for m in memberships
    ]


@router.delete("/projects/{project}/memberships/{user_id}", status_code=204)
def delete_membership(
    user_id: str, request: Request, project: Project = Depends(require_capability("memberships", "delete"))
) -> Response:
    request.app.state.stores.memberships.delete_membership(user_id, project.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Membership role bindings
# ---------------------------------------------------------------------------


@router.get("/projects/{project}/memberships/{user_id}/roles", response_model=list[RoleBindingResponse])
def list_membership_role_bindings(
    user_id: str, request: Request, project: Project = Depends(require_capability("role_bindings", "read"))
) -> list[RoleBindingResponse]:
    bindings = request.app.state.stores.membership_role_bindings.list_membership_role_bindings(user_id, project.id)
    return [_binding_response(b) for b in bindings]


@router.post(
    "/projects/{project}/memberships/{user_id}/roles/{role}", response_model=RoleBindingResponse, status_code=201
)
def create_membership_role_binding(
    user_id: str,
    role: str,
    request: Request,
    project: Project = Depends(require_capability("role_bindings", "create")),
) -> RoleBindingResponse:
    """Bind a project role to a member. Non-members are rejected with 400."""
    stores = request.app.state.stores
    resolved_role = stores.roles.lookup_role(role, project.id)
    binding = stores.membership_role_bindings.create_membership_role_binding(user_id, project.id, resolved_role.id)
    return _binding_response(binding)


@router.delete("/projects/{project}/memberships/{user_id}/roles/{role}", status_code=204)
def delete_membership_role_binding(
    user_id: str,
    role: str,
    request: Request,
    project: Project = Depends(require_capability("role_bindings", "delete")),
) -> Response:
    stores = request.app.state.stores
    resolved_role = stores.roles.lookup_role(role, project.id)
    stores.membership_role_bindings.delete_membership_role_binding(user_id, project.id, resolved_role.id)
    return Response(status_code=204)
