"""
api/routes/v1/devices.py -- Devices, labels, registration and liveness.

User-facing routes (all under /api/v1/projects/{project}):
  GET    /devices                                          -- devices:read (status computed per request)
  GET    /devices/{device}                                 -- devices:read
  PUT    /devices/{device}/labels/{key}                    -- devices:update
  DELETE /devices/{device}/labels/{key}                    -- devices:update
  GET    /devices/{device}/applications/{application}/status    -- devices:read
  GET    /devices/{device}/applications/{application}/services  -- devices:read
  POST   /device-registration-tokens                       -- device_registration_tokens:create
  GET    /device-registration-tokens/{token_id}            -- device_registration_tokens:read

Device-facing routes (X-Device-Key, except register):
  POST   /devices/register                                 -- trade a registration token for a device key
  POST   /devices/heartbeat                                -- extend liveness; optional info report
  PUT    /devices/self/applications/{application_id}/status
  PUT    /devices/self/applications/{application_id}/services/{service}/status

Liveness: each heartbeat calls DeviceStatusStore.reset_status() with the
configured TTL. Status is never stored on the device row; it is read from
the tracker whenever a device is returned.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    DeviceApplicationStatusResponse,
    DeviceApplicationStatusWrite,
    DeviceLabelResponse,
    DeviceLabelWrite,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceRegistrationTokenResponse,
    DeviceResponse,
    DeviceServiceStatusResponse,
    HeartbeatRequest,
    HeartbeatResponse,
)
from auth.dependencies import get_current_device, require_capability
from auth.models import CredentialKind
from auth.tokens import generate_secret, hash_secret
from core.config import get_settings
from core.errors import DeviceRegistrationTokenNotFoundError, ProjectNotFoundError
from fleet.models import Device, DeviceRegistrationToken
from fleet.store import register_device
from iam.models import Project
from liveness.store import DeviceStatus

logger = logging.getLogger("fleetplane.api")

_settings = get_settings()

router = APIRouter()

_PREFIX = "/projects/{project}"


def _device_response(device: Device, status: DeviceStatus, labels: dict[str, str]) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        project_id=device.project_id,
        name=device.name,
        status=status.value,
        info=device.info,
        labels=labels,
        created_at=device.created_at,
    )


def _token_response(token: DeviceRegistrationToken) -> DeviceRegistrationTokenResponse:
    return DeviceRegistrationTokenResponse(
        id=token.id,
        project_id=token.project_id,
        device_access_key_id=token.device_access_key_id,
        created_at=token.created_at,
    )


def _labels(stores, device: Device) -> dict[str, str]:
    return {lbl.key: lbl.value for lbl in stores.device_labels.list_device_labels(device.id, device.project_id)}


# ---------------------------------------------------------------------------
# Devices (user-facing)
# ---------------------------------------------------------------------------


@router.get(_PREFIX + "/devices", response_model=list[DeviceResponse])
def list_devices(
    request: Request, project: Project = Depends(require_capability("devices", "read"))
) -> list[DeviceResponse]:
    """List the project's devices with their current liveness, oldest first."""
    stores = request.app.state.stores
    devices = stores.devices.list_devices(project.id)
    statuses = stores.device_status.get_statuses([d.id for d in devices])
    return [_device_response(d, s, _labels(stores, d)) for d, s in zip(devices, statuses)]


@router.get(_PREFIX + "/devices/{device}", response_model=DeviceResponse)
def get_device(
    device: str, request: Request, project: Project = Depends(require_capability("devices", "read"))
) -> DeviceResponse:
    stores = request.app.state.stores
    found = stores.devices.lookup_device(device, project.id)
    return _device_response(found, stores.device_status.get_status(found.id), _labels(stores, found))


@router.put(_PREFIX + "/devices/{device}/labels/{key}", response_model=DeviceLabelResponse)
def set_device_label(
    device: str,
    key: str,
    request: Request,
    body: DeviceLabelWrite,
    project: Project = Depends(require_capability("devices", "update")),
) -> DeviceLabelResponse:
    """Set a label. An existing key is overwritten."""
    stores = request.app.state.stores
    found = stores.devices.lookup_device(device, project.id)
    label = stores.device_labels.set_device_label(key, found.id, project.id, body.value)
    return DeviceLabelResponse(key=label.key, device_id=label.device_id, value=label.value)


@router.delete(_PREFIX + "/devices/{device}/labels/{key}", status_code=204)
def delete_device_label(
    device: str,
    key: str,
    request: Request,
    project: Project = Depends(require_capability("devices", "update")),
) -> Response:
    stores = request.app.state.stores
    found = stores.devices.lookup_device(device, project.id)
    stores.device_labels.delete_device_label(key, found.id, project.id)
    return Response(status_code=204)


@router.get(
    _PREFIX + "/devices/{device}/applications/{application}/status", response_model=DeviceApplicationStatusResponse
)
def get_device_application_status(
    device: str,
    application: str,
    request: Request,
    project: Project = Depends(require_capability("devices", "read")),
) -> DeviceApplicationStatusResponse:
    """Which release of an application the device last reported running."""
    stores = request.app.state.stores
    found = stores.devices.lookup_device(device, project.id)
    app = stores.applications.lookup_application(application, project.id)
    status = stores.device_application_statuses.get_device_application_status(project.id, found.id, app.id)
    return DeviceApplicationStatusResponse(
        device_id=status.device_id, application_id=status.application_id, current_release_id=status.current_release_id
    )


@router.get(
    _PREFIX + "/devices/{device}/applications/{application}/services",
    response_model=list[DeviceServiceStatusResponse],
)
def list_device_service_statuses(
    device: str,
    application: str,
    request: Request,
    project: Project = Depends(require_capability("devices", "read")),
) -> list[DeviceServiceStatusResponse]:
    stores = request.app.state.stores
    found = stores.devices.lookup_device(device, project.id)
    app = stores.applications.lookup_application(application, project.id)
    statuses = stores.device_service_statuses.get_device_service_statuses(project.id, found.id, app.id)
    return [
        DeviceServiceStatusResponse(
            device_id=s.device_id,
            application_id=s.application_id,
            service=s.service,
            current_release_id=s.current_release_id,
        )
        for s in statuses
    ]


# ---------------------------------------------------------------------------
# Registration tokens (user-facing)
# ---------------------------------------------------------------------------


@router.post(
    _PREFIX + "/device-registration-tokens", response_model=DeviceRegistrationTokenResponse, status_code=201
)
def create_device_registration_token(
    request: Request,
    response: Response,
    project: Project = Depends(require_capability("device_registration_tokens", "create")),
) -> DeviceRegistrationTokenResponse:
    """Mint a single-use token to hand to a device before its first boot."""
    token = request.app.state.stores.device_registration_tokens.create_device_registration_token(project.id)
    response.headers["Cache-Control"] = "no-store"
    return _token_response(token)


@router.get(_PREFIX + "/device-registration-tokens/{token_id}", response_model=DeviceRegistrationTokenResponse)
def get_device_registration_token(
    token_id: str,
    request: Request,
    project: Project = Depends(require_capability("device_registration_tokens", "read")),
) -> DeviceRegistrationTokenResponse:
    tokens = request.app.state.stores.device_registration_tokens
    return _token_response(tokens.get_device_registration_token(token_id, project.id))


# ---------------------------------------------------------------------------
# Device-facing endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)
@router.post(_PREFIX + "/devices/register", response_model=DeviceRegisterResponse, status_code=201)
def register(project: str, request: Request, response: Response, body: DeviceRegisterRequest) -> DeviceRegisterResponse:
    """Trade a registration token for a new device and its access key.

    An unknown project answers like an unknown token (404). A token that was
    already used answers 400. The raw access key is returned ONCE.
    """
    stores = request.app.state.stores
    try:
        resolved = stores.projects.lookup_project(project)
    except ProjectNotFoundError:
        raise DeviceRegistrationTokenNotFoundError(body.registration_token) from None
    raw_key = generate_secret(CredentialKind.DEVICE_ACCESS_KEY)
    device, key = register_device(
        stores.engine,
        resolved.id,
        body.registration_token,
        hash_secret(CredentialKind.DEVICE_ACCESS_KEY, raw_key),
        body.name,
    )
    response.headers["Cache-Control"] = "no-store"
    return DeviceRegisterResponse(
        device_id=device.id, device_name=device.name, access_key_id=key.id, access_key=raw_key
    )


@router.post(_PREFIX + "/devices/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    request: Request,
    body: HeartbeatRequest | None = None,
    current: tuple[Project, Device] = Depends(get_current_device),
) -> HeartbeatResponse:
    """Keep the calling device online for another TTL; store its info report if sent."""
    project, device = current
    stores = request.app.state.stores
    if body is not None and body.info is not None:
        stores.devices.set_device_info(device.id, project.id, body.info)
    ttl = _settings.device_status_ttl_seconds
    stores.device_status.reset_status(device.id, timedelta(seconds=ttl))
    logger.debug("Heartbeat from device %s (project %s)", device.id, project.id)
    return HeartbeatResponse(device_id=device.id, status=DeviceStatus.ONLINE.value, ttl_seconds=ttl)


@router.put(
    _PREFIX + "/devices/self/applications/{application_id}/status", response_model=DeviceApplicationStatusResponse
)
def set_device_application_status(
    application_id: str,
    request: Request,
    body: DeviceApplicationStatusWrite,
    current: tuple[Project, Device] = Depends(get_current_device),
) -> DeviceApplicationStatusResponse:
    """Record the release the device runs. The release must belong to the application."""
    project, device = current
    request.app.state.stores.device_application_statuses.set_device_application_status(
        project.id, device.id, application_id, body.current_release_id
    )
    return DeviceApplicationStatusResponse(
        device_id=device.id, application_id=application_id, current_release_id=body.current_release_id
    )


@router.put(
    _PREFIX + "/devices/self/applications/{application_id}/services/{service}/status",
    response_model=DeviceServiceStatusResponse,
)
def set_device_service_status(
    application_id: str,
    service: str,
    request: Request,
    body: DeviceApplicationStatusWrite,
    current: tuple[Project, Device] = Depends(get_current_device),
) -> DeviceServiceStatusResponse:
    project, device = current
    request.app.state.stores.device_service_statuses.set_device_service_status(
        project.id, device.id, application_id, service, body.current_release_id
    )
    return DeviceServiceStatusResponse(
        device_id=device.id, application_id=application_id, service=service, current_release_id=body.current_release_id
    )
