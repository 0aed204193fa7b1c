"""
auth/tokens.py -- Hashing collaborator: passwords, secrets and credential hashes.

Security design decisions:
  Passwords: bcrypt directly. Bcrypt is the right choice for low-entropy
       secrets because its cost factor makes brute-force expensive. The
       _DUMMY_HASH constant enables timing equalization in authenticate_user()
       so response time does not reveal whether an email is registered.

  Everything else (sessions, access keys, registration tokens): generated by
       secrets.token_hex(32) -- 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, "<kind>:<raw>") so lookup by hash is O(1) and a
       hash minted for one credential kind can never equal a hash of another
       kind, even for the same raw value.

  Raw secrets carry a short kind prefix (uak_, sak_, dak_, ...) so the auth
  dependency can tell which vault to consult without trying each one.

  SECRET_KEY: sourced from core.config.get_settings().

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from auth.models import CredentialKind
from core.config import get_settings
from core.errors import UserNotFoundError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import Users

logger = logging.getLogger("fleetplane.auth")

_settings = get_settings()

# Prefix on every raw secret, per kind. Display/routing only -- never trusted
# on its own; the hash lookup is the check.
SECRET_PREFIXES: dict[CredentialKind, str] = {
    CredentialKind.SESSION: "ses",
    CredentialKind.USER_ACCESS_KEY: "uak",
    CredentialKind.REGISTRATION_TOKEN: "reg",
    CredentialKind.SERVICE_ACCOUNT_ACCESS_KEY: "sak",
    CredentialKind.DEVICE_ACCESS_KEY: "dak",
}

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that (Pydantic max_length).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("fleetplane_timing_dummy")


def authenticate_user(users: Users, email: str, password: str) -> User:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Raises UserNotFoundError on any failure so the caller cannot tell the two
    cases apart.
    """
    try:
        user = users.get_user_by_email(email)
    except UserNotFoundError:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        raise
    if not verify_password(password, user.password_hash):
        raise UserNotFoundError(email)
    return user


# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def generate_secret(kind: CredentialKind) -> str:
    """Generate a raw secret such as 'uak_<64 hex chars>'."""
    return f"{SECRET_PREFIXES[kind]}_{secrets.token_hex(32)}"


def hash_secret(kind: CredentialKind, raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, "<kind>:<raw>") as a hex string.

    Deterministic, so the vault can look credentials up by hash. Keyed, so a
    leaked database does not let an attacker mint valid hashes.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        f"{kind.value}:{raw}".encode(),
        hashlib.sha256,
    ).hexdigest()


def secret_kind(raw: str) -> CredentialKind | None:
    """Return the credential kind a raw secret's prefix claims, or None."""
    prefix, _, rest = raw.partition("_")
    if not rest:
        return None
    for kind, known in SECRET_PREFIXES.items():
        if prefix == known:
            return kind
    return None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, raw_session: str) -> None:
    """Write the raw session secret as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    """
    response.set_cookie(
        "session",
        value=raw_session,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_expire_seconds,
    )
