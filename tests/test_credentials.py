"""Unit tests for the credential vault -- auth/store.py and auth/tokens.py.

Covers:
- create/validate/delete round trip per credential kind; delete is immediate
- sessions older than session_expire_seconds are deleted on validate
- hashes are partitioned per kind (a session hash never validates as a key)
- registration tokens are single use and complete the user's registration
- authenticate_user() rejects unknown emails and wrong passwords alike
- user access key deletion is scoped to the owning user
- service account and device keys validate within their project only
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from auth.models import CredentialKind
from auth.store import register_user
from auth.tokens import authenticate_user, generate_secret, hash_password, hash_secret, secret_kind
from core.errors import (
    ConflictError,
    DeviceAccessKeyNotFoundError,
    RegistrationTokenNotFoundError,
    ServiceAccountAccessKeyNotFoundError,
    SessionNotFoundError,
    UserAccessKeyNotFoundError,
    UserNotFoundError,
    ValidationError,
)

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user(stores):
    return stores.users.create_user("ops@example.com", hash_password("correct-horse"), "Ops", "Person")


# ---------------------------------------------------------------------------
# Secrets and hashing
# ---------------------------------------------------------------------------


class TestSecrets:
    def test_generated_secret_carries_kind_prefix(self) -> None:
        raw = generate_secret(CredentialKind.USER_ACCESS_KEY)
        assert raw.startswith("uak_")
        assert secret_kind(raw) is CredentialKind.USER_ACCESS_KEY

    def test_unknown_prefix_has_no_kind(self) -> None:
        assert secret_kind("xyz_abc") is None
        assert secret_kind("uak") is None
        assert secret_kind("") is None

    def test_same_raw_value_hashes_differently_per_kind(self) -> None:
        raw = "shared-raw-value"
        assert hash_secret(CredentialKind.SESSION, raw) != hash_secret(CredentialKind.USER_ACCESS_KEY, raw)

    def test_hash_is_deterministic(self) -> None:
        raw = generate_secret(CredentialKind.SESSION)
        assert hash_secret(CredentialKind.SESSION, raw) == hash_secret(CredentialKind.SESSION, raw)


# ---------------------------------------------------------------------------
# Users and passwords
# ---------------------------------------------------------------------------


class TestUsers:
    def test_authenticate_user_success(self, stores, user) -> None:
        assert authenticate_user(stores.users, "ops@example.com", "correct-horse").id == user.id

    def test_wrong_password_and_unknown_email_raise_same_error(self, stores, user) -> None:
        with pytest.raises(UserNotFoundError):
            authenticate_user(stores.users, "ops@example.com", "wrong")
        with pytest.raises(UserNotFoundError):
            authenticate_user(stores.users, "nobody@example.com", "correct-horse")

    def test_validate_user_delegates_to_authenticate(self, stores, user) -> None:
        assert stores.users.validate_user("ops@example.com", "correct-horse").id == user.id
        with pytest.raises(UserNotFoundError):
            stores.users.validate_user("ops@example.com", "nope")

    def test_duplicate_email_is_conflict(self, stores, user) -> None:
        with pytest.raises(ConflictError):
            stores.users.create_user("ops@example.com", hash_password("another-pass"))

    def test_password_hash_is_not_plaintext(self, user) -> None:
        assert user.password_hash != "correct-horse"
        assert user.password_hash.startswith("$2")

    def test_get_unknown_user_raises_kind_error(self, stores) -> None:
        with pytest.raises(UserNotFoundError) as exc_info:
            stores.users.get_user("usr_missing")
        assert exc_info.value.key == "usr_missing"


# ---------------------------------------------------------------------------
# Registration tokens
# ---------------------------------------------------------------------------


class TestRegistrationTokens:
    def test_register_then_confirm_completes_registration(self, stores) -> None:
        raw = generate_secret(CredentialKind.REGISTRATION_TOKEN)
        token_hash = hash_secret(CredentialKind.REGISTRATION_TOKEN, raw)
        user, token = register_user(stores.engine, "new@example.com", hash_password("pass-word-1"), token_hash)
        assert user.registration_completed is False

        found = stores.registration_tokens.validate_registration_token(token_hash)
        assert found.id == token.id
        confirmed = stores.registration_tokens.consume_registration_token(found.id)
        assert confirmed.registration_completed is True
        assert stores.users.get_user(user.id).registration_completed is True

    def test_consuming_twice_fails_with_validation_error(self, stores, user) -> None:
        token = stores.registration_tokens.create_registration_token(user.id, "hash-1")
        stores.registration_tokens.consume_registration_token(token.id)
        with pytest.raises(ValidationError):
            stores.registration_tokens.consume_registration_token(token.id)
        assert stores.registration_tokens.get_registration_token(token.id).consumed is True

    def test_unknown_token(self, stores) -> None:
        with pytest.raises(RegistrationTokenNotFoundError):
            stores.registration_tokens.validate_registration_token("no-such-hash")
        with pytest.raises(RegistrationTokenNotFoundError):
            stores.registration_tokens.consume_registration_token("rgt_missing")

    def test_register_with_taken_email_writes_nothing(self, stores, user) -> None:
        with pytest.raises(ConflictError):
            register_user(stores.engine, "ops@example.com", hash_password("pass-word-1"), "orphan-hash")
        with pytest.raises(RegistrationTokenNotFoundError):
            stores.registration_tokens.validate_registration_token("orphan-hash")


# ---------------------------------------------------------------------------
# Sessions and user access keys
# ---------------------------------------------------------------------------


class TestSessions:
    def test_validate_then_delete_is_immediate(self, stores, user) -> None:
        session_hash = hash_secret(CredentialKind.SESSION, generate_secret(CredentialKind.SESSION))
        session = stores.sessions.create_session(user.id, session_hash)
        assert stores.sessions.validate_session(session_hash).user_id == user.id

        stores.sessions.delete_session(session.id)
        with pytest.raises(SessionNotFoundError):
            stores.sessions.validate_session(session_hash)

    def test_session_past_expiry_is_deleted(self, stores, user) -> None:
        session_hash = hash_secret(CredentialKind.SESSION, generate_secret(CredentialKind.SESSION))
        session = stores.sessions.create_session(user.id, session_hash)
        stale = (datetime.now(timezone.utc) - timedelta(seconds=stores.sessions.expire_seconds + 60)).isoformat()
        with stores.engine.begin() as conn:
            conn.execute(
                text("UPDATE sessions SET created_at = :created_at WHERE id = :id"),
                {"created_at": stale, "id": session.id},
            )

        with pytest.raises(SessionNotFoundError):
            stores.sessions.validate_session(session_hash)
        # The expired row is gone, not just hidden.
        with pytest.raises(SessionNotFoundError):
            stores.sessions.get_session(session.id)

    def test_session_within_expiry_validates(self, stores, user) -> None:
        session_hash = hash_secret(CredentialKind.SESSION, generate_secret(CredentialKind.SESSION))
        stores.sessions.create_session(user.id, session_hash)
        stores.sessions.expire_seconds = 3600
        assert stores.sessions.validate_session(session_hash).user_id == user.id

    def test_session_hash_does_not_validate_as_access_key(self, stores, user) -> None:
        raw = generate_secret(CredentialKind.SESSION)
        stores.sessions.create_session(user.id, hash_secret(CredentialKind.SESSION, raw))
        with pytest.raises(UserAccessKeyNotFoundError):
            stores.user_access_keys.validate_user_access_key(hash_secret(CredentialKind.USER_ACCESS_KEY, raw))
        with pytest.raises(UserAccessKeyNotFoundError):
            stores.user_access_keys.validate_user_access_key(hash_secret(CredentialKind.SESSION, raw))


class TestUserAccessKeys:
    def test_list_validate_delete(self, stores, user) -> None:
        first = stores.user_access_keys.create_user_access_key(user.id, "hash-a")
        second = stores.user_access_keys.create_user_access_key(user.id, "hash-b")
        listed = {k.id for k in stores.user_access_keys.list_user_access_keys(user.id)}
        assert listed == {first.id, second.id}

        assert stores.user_access_keys.validate_user_access_key("hash-a").id == first.id
        stores.user_access_keys.delete_user_access_key(first.id, user_id=user.id)
        with pytest.raises(UserAccessKeyNotFoundError):
            stores.user_access_keys.validate_user_access_key("hash-a")
        assert stores.user_access_keys.validate_user_access_key("hash-b").id == second.id

    def test_delete_is_scoped_to_owner(self, stores, user) -> None:
        other = stores.users.create_user("other@example.com", hash_password("other-pass"))
        key = stores.user_access_keys.create_user_access_key(user.id, "hash-owned")
        with pytest.raises(UserAccessKeyNotFoundError):
            stores.user_access_keys.delete_user_access_key(key.id, user_id=other.id)
        assert stores.user_access_keys.get_user_access_key(key.id).user_id == user.id


# ---------------------------------------------------------------------------
# Project-scoped keys
# ---------------------------------------------------------------------------


class TestProjectScopedKeys:
    def test_service_account_key_round_trip(self, stores) -> None:
        project = stores.projects.create_project("acme")
        sa = stores.service_accounts.create_service_account(project.id, "ci")
        key = stores.service_account_access_keys.create_service_account_access_key(project.id, sa.id, "sak-hash")

        found = stores.service_account_access_keys.validate_service_account_access_key("sak-hash")
        assert (found.id, found.project_id, found.service_account_id) == (key.id, project.id, sa.id)

        stores.service_account_access_keys.delete_service_account_access_key(key.id, project.id)
        with pytest.raises(ServiceAccountAccessKeyNotFoundError):
            stores.service_account_access_keys.validate_service_account_access_key("sak-hash")

    def test_service_account_key_requires_account_in_project(self, stores) -> None:
        acme = stores.projects.create_project("acme")
        globex = stores.projects.create_project("globex")
        sa = stores.service_accounts.create_service_account(acme.id, "ci")
        with pytest.raises(ValidationError):
            stores.service_account_access_keys.create_service_account_access_key(globex.id, sa.id, "sak-hash")

    def test_device_key_validates_only_in_its_project(self, stores) -> None:
        acme = stores.projects.create_project("acme")
        globex = stores.projects.create_project("globex")
        device = stores.devices.create_device(acme.id, "edge-1")
        stores.device_access_keys.create_device_access_key(acme.id, device.id, "dak-hash")

        assert stores.device_access_keys.validate_device_access_key(acme.id, "dak-hash").device_id == device.id
        with pytest.raises(DeviceAccessKeyNotFoundError):
            stores.device_access_keys.validate_device_access_key(globex.id, "dak-hash")
