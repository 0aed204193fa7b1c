"""
auth/models.py -- Domain dataclasses for users and their credentials.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work. Mirrors iam/models.py and fleet/models.py.

Every credential record carries only the opaque hash of its secret. The raw
secret exists once, in the response that created it, and is never persisted.

Layer rule: no imports from api/, iam/, fleet/, or liveness/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CredentialKind(str, Enum):
    """Namespaces for credential hashes.

    The kind is mixed into the HMAC input (auth/tokens.hash_secret) and each
    kind lives in its own table, so a hash minted for one kind can never
    validate as another.
    """

    SESSION = "session"
    USER_ACCESS_KEY = "user_access_key"
    REGISTRATION_TOKEN = "registration_token"
    SERVICE_ACCOUNT_ACCESS_KEY = "service_account_access_key"
    DEVICE_ACCESS_KEY = "device_access_key"


@dataclass
class User:
    """A human account.

    password_hash is a salted bcrypt hash. It is compared only through
    auth/tokens.authenticate_user() and never leaves the server.
    registration_completed flips to True once the user's RegistrationToken is
    consumed.
    """

    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    id: str | None = None
    registration_completed: bool = False
    created_at: str | None = None


@dataclass
class RegistrationToken:
    """Single-use token that confirms a new user's registration."""

    user_id: str
    hash: str
    id: str | None = None
    consumed: bool = False
    created_at: str | None = None


@dataclass
class Session:
    """A browser login. Deleted on logout or once older than session_expire_seconds."""

    user_id: str
    hash: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class UserAccessKey:
    """A long-lived bearer credential for scripts acting as a user."""

    user_id: str
    hash: str
    id: str | None = None
    created_at: str | None = None
