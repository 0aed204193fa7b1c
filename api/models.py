"""
API request and response models for Fleetplane REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, iam/ and
fleet/ models.py, which own the internal domain representation. Route
handlers map between the two.

Credential hashes never appear in a response model. A raw secret appears
exactly once, in the *CreatedResponse of the call that minted it.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from iam.permissions import parse_config

# Names address projects, roles, service accounts, devices and applications
# in URLs, so they are restricted to URL-safe characters.
NAME_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Annotated type shared by every request field that carries an email address.
_Email = Annotated[str, Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)]


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class RegisterConfirmRequest(BaseModel):
    """Request body for POST /api/v1/auth/register/confirm."""

    model_config = ConfigDict(str_strip_whitespace=True)

    registration_token: str = Field(min_length=1, max_length=128)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    registration_completed: bool
    created_at: Optional[str]


class RegisterResponse(BaseModel):
    """Response for POST /auth/register.

    registration_token is shown once. A deployment that mails confirmation
    links would send it out of band instead.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    registration_token: str


class MembershipSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    project_name: str


class MeResponse(BaseModel):
    """Response for GET /auth/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    memberships: list[MembershipSummary] = Field(default_factory=list)


class AccessKeyResponse(BaseModel):
    """One access key in a listing. The raw key is never returned again."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: Optional[str]


class AccessKeyCreatedResponse(BaseModel):
    """Returned once at creation. The value field is the only copy of the raw key."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: Optional[str]
    value: str


# ---------------------------------------------------------------------------
# Projects and roles
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    """Request body for POST /api/v1/projects."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: Optional[str]
    device_count: Optional[int] = None
    application_count: Optional[int] = None


class RoleWrite(BaseModel):
    """Request body for POST and PUT /projects/{project}/roles.

    config is the JSON permission document. It is parsed here so a malformed
    document fails with 422 before reaching the store, which parses it again.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    description: str = Field(default="", max_length=500)
    config: str = Field(min_length=2, max_length=10_000)

    @field_validator("config")
    @classmethod
    def config_must_parse(cls, value: str) -> str:
        parse_config(value)
        return value


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    name: str
    description: str
    config: str
    created_at: Optional[str]


class MembershipCreate(BaseModel):
    """Request body for POST /projects/{project}/memberships."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email


class MembershipResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    project_id: str
    created_at: Optional[str]


class RoleBindingResponse(BaseModel):
    """A role bound to a user membership or a service account."""

    model_config = ConfigDict(frozen=True)

    role_id: str
    project_id: str
    user_id: Optional[str] = None
    service_account_id: Optional[str] = None
    created_at: Optional[str]


class PermissionCheckResponse(BaseModel):
    """Response for GET /projects/{project}/permissions/{capability}."""

    model_config = ConfigDict(frozen=True)

    capability: str
    decision: str


# ---------------------------------------------------------------------------
# Service accounts
# ---------------------------------------------------------------------------


class ServiceAccountWrite(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    description: str = Field(default="", max_length=500)


class ServiceAccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    name: str
    description: str
    created_at: Optional[str]


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceResponse(BaseModel):
    """A device plus its liveness, computed at read time."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    name: str
    status: str
    info: dict = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: Optional[str]


class DeviceLabelWrite(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    value: str = Field(max_length=500)


class DeviceLabelResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    device_id: str
    value: str


class DeviceRegistrationTokenResponse(BaseModel):
    """The token id is the secret a new device presents to /devices/register."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    device_access_key_id: Optional[str]
    created_at: Optional[str]


class DeviceRegisterRequest(BaseModel):
    """Request body for POST /projects/{project}/devices/register (device-facing)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    registration_token: str = Field(min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100, pattern=NAME_PATTERN)


class DeviceRegisterResponse(BaseModel):
    """Returned once to a registering device. access_key is never shown again."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_name: str
    access_key_id: str
    access_key: str


class HeartbeatRequest(BaseModel):
    """Optional device self-report sent with each heartbeat."""

    info: Optional[dict] = None


class HeartbeatResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    status: str
    ttl_seconds: int


class DeviceApplicationStatusWrite(BaseModel):
    current_release_id: str = Field(min_length=1, max_length=64)


class DeviceApplicationStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    application_id: str
    current_release_id: str


class DeviceServiceStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    application_id: str
    service: str
    current_release_id: str


# ---------------------------------------------------------------------------
# Applications and releases
# ---------------------------------------------------------------------------


class ApplicationWrite(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    description: str = Field(default="", max_length=500)
    settings: dict = Field(default_factory=dict)


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    name: str
    description: str
    settings: dict
    created_at: Optional[str]
    device_count: Optional[int] = None


class ReleaseCreate(BaseModel):
    """Request body for POST .../applications/{application}/releases."""

    config: str = Field(min_length=1, max_length=100_000)


class ReleaseResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    application_id: str
    config: str
    created_at: Optional[str]
    device_count: Optional[int] = None


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
