"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Principal resolution, checked in priority order:
  1. "session" cookie -- set by POST /auth/login for browser clients.
  2. Authorization: Bearer <key> -- a user access key (uak_...) or a service
     account access key (sak_...). The prefix picks the vault; the hash
     lookup is the actual check.

Devices authenticate separately with X-Device-Key, always within the project
named in the URL.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() raises HTTP 401 if unauthenticated.
get_current_user() additionally requires a human user.
require_capability() resolves the {project} path parameter and asks the RBAC
resolver; a denial and an unknown project both produce the same 403 so
project names cannot be probed.

Layer rule: no imports from api/. auth/ may import iam/ (principals, rbac)
and fleet/ (device keys) because this module sits at the HTTP boundary.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.models import CredentialKind, User
from auth.tokens import hash_secret, secret_kind
from core.errors import (
    DeviceAccessKeyNotFoundError,
    DeviceNotFoundError,
    ProjectNotFoundError,
    ServiceAccountAccessKeyNotFoundError,
    SessionNotFoundError,
    UserAccessKeyNotFoundError,
    UserNotFoundError,
)
from fleet.models import Device
from iam.models import Principal, PrincipalKind, Project
from iam.permissions import Capability
from iam.rbac import Decision

logger = logging.getLogger("fleetplane.auth")


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request via session cookie or Bearer access key.

    Returns the Principal on success, None on any failure. Never raises.
    """
    stores = request.app.state.stores

    raw_session = request.cookies.get("session")
    if raw_session:
        try:
            session = stores.sessions.validate_session(hash_secret(CredentialKind.SESSION, raw_session))
            return Principal.user(session.user_id)
        except SessionNotFoundError:
            pass

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    raw_key = auth_header[7:]
    kind = secret_kind(raw_key)

    if kind is CredentialKind.USER_ACCESS_KEY:
        try:
            key = stores.user_access_keys.validate_user_access_key(hash_secret(kind, raw_key))
            return Principal.user(key.user_id)
        except UserAccessKeyNotFoundError:
            return None

    if kind is CredentialKind.SERVICE_ACCOUNT_ACCESS_KEY:
        try:
            key = stores.service_account_access_keys.validate_service_account_access_key(hash_secret(kind, raw_key))
            return Principal.service_account(key.service_account_id, key.project_id)
        except ServiceAccountAccessKeyNotFoundError:
            return None

    return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def get_current_user(request: Request) -> User:
    """Require a human user. Raises 401 if unauthenticated, 403 for service accounts."""
    principal = get_current_principal(request)
    if principal.kind is not PrincipalKind.USER:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "This operation requires a user account."},
        )
    try:
        return request.app.state.stores.users.get_user(principal.id)
    except UserNotFoundError:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        ) from None


def require_capability(resource: str, action: str):
    """Build a dependency that authorizes `resource:action` in the {project} path param.

    Usage:
        @router.get("/projects/{project}/devices")
        def route(project: Project = Depends(require_capability("devices", "read"))): ...
    """
    capability = Capability(resource, action)

    def dependency(request: Request, project: str) -> Project:
        principal = get_current_principal(request)
        stores = request.app.state.stores
        try:
            resolved = stores.projects.lookup_project(project)
        except ProjectNotFoundError:
            resolved = None
        if resolved is None or stores.authorizer.authorize(principal, resolved.id, capability) is Decision.DENY:
            logger.info("Denied %s %s: %s in project %s", principal.kind.value, principal.id, capability, project)
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {capability} denied."},
            )
        request.state.principal = principal
        return resolved

    return dependency


def get_current_device(request: Request, project: str) -> tuple[Project, Device]:
    """Authenticate a device by X-Device-Key within the {project} path param.

    Raises 401 for a missing, unknown or other-project key.
    """
    unauthorized = HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Device authentication required."},
    )
    raw_key = request.headers.get("X-Device-Key", "")
    if secret_kind(raw_key) is not CredentialKind.DEVICE_ACCESS_KEY:
        raise unauthorized
    stores = request.app.state.stores
    try:
        resolved = stores.projects.lookup_project(project)
        key = stores.device_access_keys.validate_device_access_key(
            resolved.id, hash_secret(CredentialKind.DEVICE_ACCESS_KEY, raw_key)
        )
        device = stores.devices.get_device(key.device_id, resolved.id)
    except (ProjectNotFoundError, DeviceAccessKeyNotFoundError, DeviceNotFoundError):
        raise unauthorized from None
    return resolved, device
