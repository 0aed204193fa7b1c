"""
iam/permissions.py -- Role permission documents and capability matching.

A role's config is a JSON document:

    {"rules": [{"resources": ["devices", "applications"], "actions": ["read"]},
               {"resources": ["devices"], "actions": ["update"]}]}

"*" is a wildcard in either list. A capability is "resource:action"
(e.g. "devices:read"); a bare action such as "read" means that action on
every resource and is only granted by a rule whose resources include "*".

Pydantic validates the document shape; the resolver works on the flattened
set of (resource, action) grants.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError

WILDCARD = "*"

ADMIN_CONFIG = '{"rules": [{"resources": ["*"], "actions": ["*"]}]}'


class Rule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    resources: list[str] = Field(min_length=1)
    actions: list[str] = Field(min_length=1)


class PermissionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rules: list[Rule] = Field(default_factory=list)


def parse_config(raw: str) -> PermissionConfig:
    """Parse a role config document. Raises ValidationError if malformed."""
    try:
        return PermissionConfig.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid role config: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True)
class Capability:
    resource: str
    action: str

    @classmethod
    def parse(cls, value: str) -> "Capability":
        """Parse 'devices:read' or a bare 'read' (any resource)."""
        resource, sep, action = value.partition(":")
        if not sep:
            resource, action = WILDCARD, resource
        if not resource or not action:
            raise ValidationError(f"invalid capability: {value!r}")
        return cls(resource, action)

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


class Permissions:
    """The effective grant set of one principal in one project."""

    def __init__(self, grants: frozenset[Capability] = frozenset()) -> None:
        self.grants = grants

    @classmethod
    def from_config(cls, config: PermissionConfig) -> "Permissions":
        grants = frozenset(
            Capability(resource, action)
            for rule in config.rules
            for resource in rule.resources
            for action in rule.actions
        )
        return cls(grants)

    def union(self, other: "Permissions") -> "Permissions":
        return Permissions(self.grants | other.grants)

    def allows(self, capability: Capability) -> bool:
        for grant in self.grants:
            if grant.resource in (WILDCARD, capability.resource) and grant.action in (WILDCARD, capability.action):
                return True
        return False

    def __bool__(self) -> bool:
        return bool(self.grants)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Permissions) and self.grants == other.grants

    def __repr__(self) -> str:
        return f"Permissions({sorted(str(g) for g in self.grants)})"
