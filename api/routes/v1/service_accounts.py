"""
api/routes/v1/service_accounts.py -- Service accounts, their access keys and role bindings.

Routes (all under /api/v1/projects/{project}):
  POST   /service-accounts                                   -- service_accounts:create
  GET    /service-accounts                                   -- service_accounts:read
  GET    /service-accounts/{service_account}                 -- service_accounts:read
  PUT    /service-accounts/{service_account}                 -- service_accounts:update
  DELETE /service-accounts/{service_account}                 -- service_accounts:delete
  POST   /service-accounts/{service_account}/keys            -- service_account_access_keys:create
  GET    /service-accounts/{service_account}/keys            -- service_account_access_keys:read
  DELETE /service-accounts/{service_account}/keys/{key_id}   -- service_account_access_keys:delete
  GET    /service-accounts/{service_account}/roles           -- role_bindings:read
  POST   /service-accounts/{service_account}/roles/{role}    -- role_bindings:create
  DELETE /service-accounts/{service_account}/roles/{role}    -- role_bindings:delete

A service account key authenticates as a principal that lives inside this
one project; the resolver denies it everywhere else.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    AccessKeyCreatedResponse,
    AccessKeyResponse,
    RoleBindingResponse,
    ServiceAccountResponse,
    ServiceAccountWrite,
)
from auth.dependencies import require_capability
from auth.models import CredentialKind
from auth.tokens import generate_secret, hash_secret
from core.errors import ServiceAccountAccessKeyNotFoundError
from iam.models import Project, ServiceAccount, ServiceAccountRoleBinding

router = APIRouter()

_PREFIX = "/projects/{project}/service-accounts"


def _sa_response(sa: ServiceAccount) -> ServiceAccountResponse:
    return ServiceAccountResponse(
        id=sa.id, project_id=sa.project_id, name=sa.name, description=sa.description, created_at=sa.created_at
    )


def _binding_response(binding: ServiceAccountRoleBinding) -> RoleBindingResponse:
    return RoleBindingResponse(
        role_id=binding.role_id,
        project_id=binding.project_id,
        service_account_id=binding.service_account_id,
        created_at=binding.created_at,
    )


# ---------------------------------------------------------------------------
# Service accounts
# ---------------------------------------------------------------------------


@router.post(_PREFIX, response_model=ServiceAccountResponse, status_code=201)
def create_service_account(
    request: Request,
    body: ServiceAccountWrite,
    project: Project = Depends(require_capability("service_accounts", "create")),
) -> ServiceAccountResponse:
    sa = request.app.state.stores.service_accounts.create_service_account(project.id, body.name, body.description)
    return _sa_response(sa)


@router.get(_PREFIX, response_model=list[ServiceAccountResponse])
def list_service_accounts(
    request: Request, project: Project = Depends(require_capability("service_accounts", "read"))
) -> list[ServiceAccountResponse]:
    return [_sa_response(sa) for sa in request.app.state.stores.service_accounts.list_service_accounts(project.id)]


@router.get(_PREFIX + "/{service_account}", response_model=ServiceAccountResponse)
def get_service_account(
    service_account: str,
    request: Request,
    project: Project = Depends(require_capability("service_accounts", "read")),
) -> ServiceAccountResponse:
    return _sa_response(request.app.state.stores.service_accounts.lookup_service_account(service_account, project.id))


@router.put(_PREFIX + "/{service_account}", response_model=ServiceAccountResponse)
def update_service_account(
    service_account: str,
    request: Request,
    body: ServiceAccountWrite,
    project: Project = Depends(require_capability("service_accounts", "update")),
) -> ServiceAccountResponse:
    accounts = request.app.state.stores.service_accounts
    existing = accounts.lookup_service_account(service_account, project.id)
    return _sa_response(accounts.update_service_account(existing.id, project.id, body.name, body.description))


@router.delete(_PREFIX + "/{service_account}", status_code=204)
def delete_service_account(
    service_account: str,
    request: Request,
    project: Project = Depends(require_capability("service_accounts", "delete")),
) -> Response:
    """Delete the account and revoke its access keys."""
    accounts = request.app.state.stores.service_accounts
    accounts.delete_service_account(accounts.lookup_service_account(service_account, project.id).id, project.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Access keys
# ---------------------------------------------------------------------------


@router.post(_PREFIX + "/{service_account}/keys", response_model=AccessKeyCreatedResponse, status_code=201)
def create_service_account_access_key(
    service_account: str,
    request: Request,
    response: Response,
    project: Project = Depends(require_capability("service_account_access_keys", "create")),
) -> AccessKeyCreatedResponse:
    """Mint a key for the service account. The raw key is shown ONCE."""
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    raw_key = generate_secret(CredentialKind.SERVICE_ACCOUNT_ACCESS_KEY)
    key = stores.service_account_access_keys.create_service_account_access_key(
        project.id, sa.id, hash_secret(CredentialKind.SERVICE_ACCOUNT_ACCESS_KEY, raw_key)
    )
    response.headers["Cache-Control"] = "no-store"
    return AccessKeyCreatedResponse(id=key.id, created_at=key.created_at, value=raw_key)


@router.get(_PREFIX + "/{service_account}/keys", response_model=list[AccessKeyResponse])
def list_service_account_access_keys(
    service_account: str,
    request: Request,
    project: Project = Depends(require_capability("service_account_access_keys", "read")),
) -> list[AccessKeyResponse]:
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    keys = stores.service_account_access_keys.list_service_account_access_keys(project.id, sa.id)
    return [AccessKeyResponse(id=k.id, created_at=k.created_at) for k in keys]


@router.delete(_PREFIX + "/{service_account}/keys/{key_id}", status_code=204)
def delete_service_account_access_key(
    service_account: str,
    key_id: str,
    request: Request,
    project: Project = Depends(require_capability("service_account_access_keys", "delete")),
) -> Response:
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    key = stores.service_account_access_keys.get_service_account_access_key(key_id, project.id)
    if key.service_account_id != sa.id:
        raise ServiceAccountAccessKeyNotFoundError(key_id)
    stores.service_account_access_keys.delete_service_account_access_key(key_id, project.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Role bindings
# ---------------------------------------------------------------------------


@router.get(_PREFIX + "/{service_account}/roles", response_model=list[RoleBindingResponse])
def list_service_account_role_bindings(
    service_account: str,
    request: Request,
    project: Project = Depends(require_capability("role_bindings", "read")),
) -> list[RoleBindingResponse]:
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    bindings = stores.service_account_role_bindings.list_service_account_role_bindings(sa.id, project.id)
    return [_binding_response(b) for b in bindings]


@router.post(_PREFIX + "/{service_account}/roles/{role}", response_model=RoleBindingResponse, status_code=201)
def create_service_account_role_binding(
    service_account: str,
    role: str,
    request: Request,
    project: Project = Depends(require_capability("role_bindings", "create")),
) -> RoleBindingResponse:
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    resolved_role = stores.roles.lookup_role(role, project.id)
    binding = stores.service_account_role_bindings.create_service_account_role_binding(
        sa.id, resolved_role.id, project.id
    )
    return _binding_response(binding)


@router.delete(_PREFIX + "/{service_account}/roles/{role}", status_code=204)
def delete_service_account_role_binding(
    service_account: str,
    role: str,
    request: Request,
    project: Project = Depends(require_capability("role_bindings", "delete")),
) -> Response:
    stores = request.app.state.stores
    sa = stores.service_accounts.lookup_service_account(service_account, project.id)
    resolved_role = stores.roles.lookup_role(role, project.id)
    stores.service_account_role_bindings.delete_service_account_role_binding(sa.id, resolved_role.id, project.id)
    return Response(status_code=204)
