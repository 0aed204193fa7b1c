"""
auth/store.py -- SQLAlchemy Core persistence for users and user credentials.

Pattern: Repository + Data Mapper. One repository class per entity family
(Users, RegistrationTokens, Sessions, UserAccessKeys), each constructed from
an injected Engine. The _row_to_* functions are the mappers. Route and
dependency code never touches SQL directly.

Credential vault contract (sessions, access keys, registration tokens):
  create  -- stores only the hash handed in by the caller
  validate -- pure lookup by hash equality; unknown hash raises the
              kind-specific NotFound error
              (a session older than session_expire_seconds is deleted and
              misses the same way)
  delete  -- immediate; nothing caches credentials, so the next validate
             call misses

Each credential kind has its own table, so hashes are partitioned per kind
in storage as well as in the HMAC input (see auth/tokens.hash_secret).

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, iam/, fleet/, or liveness/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, update
from sqlalchemy.engine import Engine

from auth.models import RegistrationToken, Session, User, UserAccessKey
from core.config import get_settings
from core.db import Repository, create_schema, new_id, now_iso, transaction
from core.errors import (
    RegistrationTokenNotFoundError,
    SessionNotFoundError,
    UserAccessKeyNotFoundError,
    UserNotFoundError,
    ValidationError,
)

logger = logging.getLogger("fleetplane.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("registration_completed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_registration_tokens = Table(
    "registration_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("hash", String(64), nullable=False, unique=True),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_user_access_keys = Table(
    "user_access_keys",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)


def init_schema(engine: Engine) -> None:
    create_schema(engine, metadata)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class Users(Repository):
    """Repository for User records.

    Usage:
        users = Users(engine)
        user = users.create_user("ada@example.com", hash_password("secret"), "Ada", "Lovelace")
        users.mark_registration_completed(user.id)
    """

    def create_user(self, email: str, password_hash: str, first_name: str = "", last_name: str = "") -> User:
        """Insert a new user. Raises ConflictError if the email is taken."""
        user = User(
            id=new_id("usr"),
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            created_at=now_iso(),
        )
        with self._tx() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    email=user.email,
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    registration_completed=0,
                    created_at=user.created_at,
                )
            )
        return user

    def get_user(self, id: str) -> User:
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.id == id)).fetchone()
        if row is None:
            raise UserNotFoundError(id)
        return _row_to_user(row)

    def get_user_by_email(self, email: str) -> User:
        """Look up a user by exact email (case-sensitive)."""
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        if row is None:
            raise UserNotFoundError(email)
        return _row_to_user(row)

    def validate_user(self, email: str, password: str) -> User:
        """Check an email/password pair. Raises UserNotFoundError on any mismatch."""
        from auth.tokens import authenticate_user

        return authenticate_user(self, email, password)

    def mark_registration_completed(self, id: str) -> User:
        with self._tx() as conn:
            result = conn.execute(_users.update().where(_users.c.id == id).values(registration_completed=1))
            if result.rowcount == 0:
                raise UserNotFoundError(id)
            row = conn.execute(_users.select().where(_users.c.id == id)).fetchone()
        return _row_to_user(row)


class RegistrationTokens(Repository):
    """Single-use tokens confirming a user's registration."""

    def create_registration_token(self, user_id: str, hash: str) -> RegistrationToken:
        token = RegistrationToken(id=new_id("rgt"), user_id=user_id, hash=hash, created_at=now_iso())
        with self._tx() as conn:
            conn.execute(
                _registration_tokens.insert().values(
                    id=token.id, user_id=user_id, hash=hash, consumed=0, created_at=token.created_at
                )
            )
        return token

    def get_registration_token(self, id: str) -> RegistrationToken:
        with self._tx() as conn:
            row = conn.execute(_registration_tokens.select().where(_registration_tokens.c.id == id)).fetchone()
        if row is None:
            raise RegistrationTokenNotFoundError(id)
        return _row_to_registration_token(row)

    def validate_registration_token(self, hash: str) -> RegistrationToken:
        with self._tx() as conn:
            row = conn.execute(_registration_tokens.select().where(_registration_tokens.c.hash == hash)).fetchone()
        if row is None:
            raise RegistrationTokenNotFoundError()
        return _row_to_registration_token(row)

    def consume_registration_token(self, id: str) -> User:
        """Consume the token and complete its user's registration, atomically.

        The conditional UPDATE (consumed = 0) is the single-use guard: of two
        concurrent consumers only one sees rowcount 1. The loser, and any later
        caller, gets ValidationError.
        """
        with self._tx() as conn:
            row = conn.execute(_registration_tokens.select().where(_registration_tokens.c.id == id)).fetchone()
            if row is None:
                raise RegistrationTokenNotFoundError(id)
            result = conn.execute(
                update(_registration_tokens)
                .where((_registration_tokens.c.id == id) & (_registration_tokens.c.consumed == 0))
                .values(consumed=1)
            )
            if result.rowcount == 0:
                raise ValidationError("registration token has already been used")
            return Users(self.engine).mark_registration_completed(row.user_id)


def register_user(
    engine: Engine, email: str, password_hash: str, token_hash: str, first_name: str = "", last_name: str = ""
) -> tuple[User, RegistrationToken]:
    """Create an unconfirmed user and its registration token in one transaction.

    Raises ConflictError if the email is taken; nothing is written then.
    """
    with transaction(engine):
        user = Users(engine).create_user(email, password_hash, first_name, last_name)
        token = RegistrationTokens(engine).create_registration_token(user.id, token_hash)
    return user, token


class Sessions(Repository):
    def __init__(self, engine: Engine, expire_seconds: int | None = None) -> None:
        super().__init__(engine)
        if expire_seconds is None:
            expire_seconds = get_settings().session_expire_seconds
        self.expire_seconds = expire_seconds

    def create_session(self, user_id: str, hash: str) -> Session:
        session = Session(id=new_id("ses"), user_id=user_id, hash=hash, created_at=now_iso())
        with self._tx() as conn:
            conn.execute(
                _sessions.insert().values(id=session.id, user_id=user_id, hash=hash, created_at=session.created_at)
            )
        return session

    def get_session(self, id: str) -> Session:
        with self._tx() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == id)).fetchone()
        if row is None:
            raise SessionNotFoundError(id)
        return _row_to_session(row)

    def validate_session(self, hash: str) -> Session:
        """Return the session for hash. Sessions older than expire_seconds are deleted and treated as absent."""
        with self._tx() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.hash == hash)).fetchone()
            if row is None:
                raise SessionNotFoundError()
            session = _row_to_session(row)
            age = datetime.now(timezone.utc) - datetime.fromisoformat(session.created_at)
            expired = age > timedelta(seconds=self.expire_seconds)
            if expired:
                conn.execute(_sessions.delete().where(_sessions.c.id == session.id))
        if expired:
            # Raised outside the transaction so the delete commits.
            logger.info("Session %s expired after %s", session.id, age)
            raise SessionNotFoundError()
        return session

    def delete_session(self, id: str) -> None:
        with self._tx() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == id))
        if result.rowcount == 0:
            raise SessionNotFoundError(id)


class UserAccessKeys(Repository):
    def create_user_access_key(self, user_id: str, hash: str) -> UserAccessKey:
        key = UserAccessKey(id=new_id("uak"), user_id=user_id, hash=hash, created_at=now_iso())
        with self._tx() as conn:
            conn.execute(
                _user_access_keys.insert().values(id=key.id, user_id=user_id, hash=hash, created_at=key.created_at)
            )
        return key

    def get_user_access_key(self, id: str) -> UserAccessKey:
        with self._tx() as conn:
            row = conn.execute(_user_access_keys.select().where(_user_access_keys.c.id == id)).fetchone()
        if row is None:
            raise UserAccessKeyNotFoundError(id)
        return _row_to_user_access_key(row)

    def list_user_access_keys(self, user_id: str) -> list[UserAccessKey]:
        """Return the user's keys, newest first."""
        with self._tx() as conn:
            rows = conn.execute(
                _user_access_keys.select()
                .where(_user_access_keys.c.user_id == user_id)
                .order_by(_user_access_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_user_access_key(r) for r in rows]

    def validate_user_access_key(self, hash: str) -> UserAccessKey:
        with self._tx() as conn:
            row = conn.execute(_user_access_keys.select().where(_user_access_keys.c.hash == hash)).fetchone()
        if row is None:
            raise UserAccessKeyNotFoundError()
        return _row_to_user_access_key(row)

    def delete_user_access_key(self, id: str, user_id: str | None = None) -> None:
        """Revoke a key. When user_id is given it must own the key (IDOR guard)."""
        condition = _user_access_keys.c.id == id
        if user_id is not None:
            condition = condition & (_user_access_keys.c.user_id == user_id)
        with self._tx() as conn:
            result = conn.execute(_user_access_keys.delete().where(condition))
        if result.rowcount == 0:
            raise UserAccessKeyNotFoundError(id)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        registration_completed=bool(row.registration_completed),
        created_at=row.created_at,
    )


def _row_to_registration_token(row) -> RegistrationToken:
    return RegistrationToken(
        id=row.id,
        user_id=row.user_id,
        hash=row.hash,
        consumed=bool(row.consumed),
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    return Session(id=row.id, user_id=row.user_id, hash=row.hash, created_at=row.created_at)


def _row_to_user_access_key(row) -> UserAccessKey:
    return UserAccessKey(id=row.id, user_id=row.user_id, hash=row.hash, created_at=row.created_at)
