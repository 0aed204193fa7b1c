"""
fleet/models.py -- Domain dataclasses for devices, applications and releases.

Pure data containers; fleet/store.py does the work. Every record carries a
project_id and is only ever returned to callers scoped to that project.

Layer rule: no imports from api/, iam/, or liveness/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Device:
    """A managed device.

    info is the free-form blob the device reports about itself (OS release,
    IP address, agent version). Stored as JSON; no schema is imposed.
    """

    project_id: str
    name: str
    id: str | None = None
    info: dict = field(default_factory=dict)
    created_at: str | None = None


@dataclass
class DeviceLabel:
    key: str
    device_id: str
    project_id: str
    value: str


@dataclass
class DeviceAccessKey:
    project_id: str
    device_id: str
    hash: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class DeviceRegistrationToken:
    """Handed to a device before it exists; consumed once when it registers.

    The token id is the secret the device presents. device_access_key_id is
    None until the token is bound, and binding is irreversible.
    """

    project_id: str
    id: str | None = None
    device_access_key_id: str | None = None
    created_at: str | None = None


@dataclass
class Application:
    project_id: str
    name: str
    description: str = ""
    settings: dict = field(default_factory=dict)
    id: str | None = None
    created_at: str | None = None


@dataclass
class Release:
    """Immutable application config snapshot. Latest = last created."""

    project_id: str
    application_id: str
    config: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class DeviceApplicationStatus:
    project_id: str
    device_id: str
    application_id: str
    current_release_id: str


@dataclass
class DeviceServiceStatus:
    project_id: str
    device_id: str
    application_id: str
    service: str
    current_release_id: str


@dataclass
class DeviceCounts:
    """Count of devices matching a scope (project, application or release)."""

    all_count: int = 0


@dataclass
class ApplicationCounts:
    all_count: int = 0
