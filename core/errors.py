"""
core/errors.py -- Fleetplane exception hierarchy.

All business errors inherit from FleetplaneError so the API layer can map
them to HTTP responses with one handler per family:

  NotFoundError          -> 404  (one subclass per entity kind)
  ValidationError        -> 400  (write-time invariant violations)
  ConflictError          -> 409  (duplicate unique key; a ValidationError)
  DeniedError            -> 403  (RBAC resolver said no)
  StoreUnavailableError  -> 503  (storage collaborator failed; outcome unknown)

NotFoundError carries the entity kind and the key that failed to resolve so
callers can branch on exc.kind instead of comparing message strings.

Layer rule: core/ is the kernel. No imports from api/, auth/, iam/, fleet/,
or liveness/.
"""

from __future__ import annotations


class FleetplaneError(Exception):
    """Base exception for all Fleetplane errors."""


class NotFoundError(FleetplaneError, LookupError):
    """An id, hash or name did not resolve inside the caller's scope."""

    kind = "resource"

    def __init__(self, key: str = "") -> None:
        self.key = key
        super().__init__(f"{self.kind.replace('_', ' ')} not found")


class ValidationError(FleetplaneError, ValueError):
    """A write would violate an invariant."""


class ConflictError(ValidationError):
    """A write would duplicate a unique key."""


class DeniedError(FleetplaneError):
    """The principal lacks the requested capability in the project."""

    def __init__(self, project_id: str, capability: str) -> None:
        self.project_id = project_id
        self.capability = capability
        super().__init__(f"{capability} denied in project {project_id}")


class StoreUnavailableError(FleetplaneError):
    """The storage collaborator failed; treat the operation as indeterminate."""


# ---------------------------------------------------------------------------
# Per-kind NotFound errors
# ---------------------------------------------------------------------------


class UserNotFoundError(NotFoundError):
    kind = "user"


class RegistrationTokenNotFoundError(NotFoundError):
    kind = "registration_token"


class SessionNotFoundError(NotFoundError):
    kind = "session"


class UserAccessKeyNotFoundError(NotFoundError):
    kind = "user_access_key"


class ProjectNotFoundError(NotFoundError):
    kind = "project"


class RoleNotFoundError(NotFoundError):
    kind = "role"


class MembershipNotFoundError(NotFoundError):
    kind = "membership"


class MembershipRoleBindingNotFoundError(NotFoundError):
    kind = "membership_role_binding"


class ServiceAccountNotFoundError(NotFoundError):
    kind = "service_account"


class ServiceAccountAccessKeyNotFoundError(NotFoundError):
    kind = "service_account_access_key"


class ServiceAccountRoleBindingNotFoundError(NotFoundError):
    kind = "service_account_role_binding"


class DeviceNotFoundError(NotFoundError):
    kind = "device"


class DeviceLabelNotFoundError(NotFoundError):
    kind = "device_label"


class DeviceAccessKeyNotFoundError(NotFoundError):
    kind = "device_access_key"


class DeviceRegistrationTokenNotFoundError(NotFoundError):
    kind = "device_registration_token"


class ApplicationNotFoundError(NotFoundError):
    kind = "application"


class ReleaseNotFoundError(NotFoundError):
    kind = "release"


class DeviceApplicationStatusNotFoundError(NotFoundError):
    kind = "device_application_status"


class DeviceServiceStatusNotFoundError(NotFoundError):
    kind = "device_service_status"
