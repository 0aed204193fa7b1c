"""
tests/test_api_routes.py -- Integration tests for the /api/v1 routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> RBAC resolution -> repository operations -> response model serialization.
Unit testing individual route functions would miss middleware, dependency
injection, and the exception-to-status mapping -- integration tests are the
right tool here.

Coverage:
  - Auth failures: 401 without credentials, 401 for a foreign device key
  - Registration flow: register -> confirm -> login cookie -> me -> logout
  - RBAC over HTTP: viewer can read but not update; unknown project is 403
  - Device flow: registration token -> register -> heartbeat -> online -> offline
  - Applications and releases, including /releases/latest
  - Service account keys authenticate as their account, inside their project only
  - Permission check endpoint

Fixtures used (from conftest.py):
  - api_client: (client, admin_key, stores, clock) -- the admin user owns "acme".
    The module shares one database, so every test uses its own names.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.stores import Stores
from conftest import ADMIN_EMAIL, FakeClock, create_confirmed_user, mint_user_access_key

ApiClient = tuple[TestClient, str, Stores, FakeClock]

VIEWER_CONFIG = '{"rules": [{"resources": ["*"], "actions": ["read"]}]}'


def _auth(key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


@pytest.fixture
def client(api_client: ApiClient):
    """The shared TestClient with its cookie jar emptied after each test."""
    test_client = api_client[0]
    yield test_client
    test_client.cookies.clear()


class TestApiAuthFailure:
    """Unauthenticated requests to protected API routes must return 401."""

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/auth/me"),
            ("get", "/api/v1/auth/access-keys"),
            ("post", "/api/v1/projects"),
            ("get", "/api/v1/projects/acme"),
            ("get", "/api/v1/projects/acme/devices"),
            ("get", "/api/v1/projects/acme/permissions/read"),
        ],
    )
    def test_unauthenticated(self, client: TestClient, method: str, path: str) -> None:
        resp = getattr(client, method)(path)
        assert resp.status_code == 401, f"Expected 401, got {resp.status_code}: {resp.text}"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_unknown_bearer_key(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers=_auth("uak_not-a-real-key"))
        assert resp.status_code == 401

    def test_docs_require_auth(self, client: TestClient) -> None:
        assert client.get("/docs").status_code == 401


class TestAuthRoutes:
    """Registration, login and access key management."""

    def test_register_confirm_login_logout(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "new@example.com", "password": "new-password", "first_name": "New"},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["user"]["registration_completed"] is False
        assert resp.headers["Cache-Control"] == "no-store"

        # Login before confirmation is refused.
        resp = client.post("/api/v1/auth/login", json={"email": "new@example.com", "password": "new-password"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "registration_incomplete"

        resp = client.post("/api/v1/auth/register/confirm", json={"registration_token": data["registration_token"]})
        assert resp.status_code == 200
        assert resp.json()["registration_completed"] is True

        resp = client.post(
            "/api/v1/auth/register/confirm", json={"registration_token": data["registration_token"]}
        )
        assert resp.status_code == 400

        resp = client.post("/api/v1/auth/login", json={"email": "new@example.com", "password": "new-password"})
        assert resp.status_code == 200
        assert "session" in resp.cookies

        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "new@example.com"
        assert resp.json()["memberships"] == []

        assert client.post("/api/v1/auth/logout").status_code == 200
        client.cookies.clear()
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_logged_out_session_cookie_stops_working(self, client: TestClient, api_client: ApiClient) -> None:
        _c, _key, stores, _clock = api_client
        create_confirmed_user(stores, "cookie@example.com", "cookie-pass")
        resp = client.post("/api/v1/auth/login", json={"email": "cookie@example.com", "password": "cookie-pass"})
        raw_session = resp.cookies["session"]

        client.post("/api/v1/auth/logout")
        client.cookies.clear()
        client.cookies.set("session", raw_session)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401

    def test_duplicate_registration_is_conflict(self, client: TestClient) -> None:
        body = {"email": "twice@example.com", "password": "twice-password"}
        assert client.post("/api/v1/auth/register", json=body).status_code == 201
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_bad_credentials(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        resp = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "wrong-password"})
        assert resp.status_code == 401

    def test_register_validation(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"email": "short@example.com", "password": "short"})
        assert resp.status_code == 422

    def test_access_key_lifecycle(self, client: TestClient, api_client: ApiClient) -> None:
        _c, _key, stores, _clock = api_client
        user_id = create_confirmed_user(stores, "keys@example.com")
        bootstrap_key = mint_user_access_key(stores, user_id)

        resp = client.post("/api/v1/auth/access-keys", headers=_auth(bootstrap_key))
        assert resp.status_code == 201
        created = resp.json()
        assert created["value"].startswith("uak_")

        resp = client.get("/api/v1/auth/me", headers=_auth(created["value"]))
        assert resp.status_code == 200

        ids = [k["id"] for k in client.get("/api/v1/auth/access-keys", headers=_auth(bootstrap_key)).json()]
        assert created["id"] in ids

        resp = client.delete(f"/api/v1/auth/access-keys/{created['id']}", headers=_auth(bootstrap_key))
        assert resp.status_code == 204
        assert client.get("/api/v1/auth/me", headers=_auth(created["value"])).status_code == 401


class TestProjectRoutes:
    """Projects, roles and memberships under RBAC."""

    def test_create_project_makes_caller_admin(self, client: TestClient, api_client: ApiClient) -> None:
        _c, _key, stores, _clock = api_client
        owner_key = mint_user_access_key(stores, create_confirmed_user(stores, "owner@example.com"))

        resp = client.post("/api/v1/projects", json={"name": "initech"}, headers=_auth(owner_key))
        assert resp.status_code == 201, resp.text
        resp = client.get("/api/v1/projects/initech", headers=_auth(owner_key))
        assert resp.status_code == 200
        assert resp.json()["device_count"] == 0

        roles = client.get("/api/v1/projects/initech/roles", headers=_auth(owner_key)).json()
        assert [r["name"] for r in roles] == ["admin"]

    def test_duplicate_project_is_conflict(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        resp = client.post("/api/v1/projects", json={"name": "acme"}, headers=_auth(admin_key))
        assert resp.status_code == 409

    def test_viewer_can_read_but_not_update(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, stores, _clock = api_client
        viewer_key = mint_user_access_key(stores, create_confirmed_user(stores, "viewer@example.com"))
        viewer_id = stores.users.get_user_by_email("viewer@example.com").id

        resp = client.post(
            "/api/v1/projects/acme/roles",
            json={"name": "viewer", "config": VIEWER_CONFIG},
            headers=_auth(admin_key),
        )
        assert resp.status_code == 201, resp.text
        resp = client.post(
            "/api/v1/projects/acme/memberships", json={"email": "viewer@example.com"}, headers=_auth(admin_key)
        )
        assert resp.status_code == 201

        # Membership alone grants nothing.
        assert client.get("/api/v1/projects/acme/roles", headers=_auth(viewer_key)).status_code == 403

        resp = client.post(f"/api/v1/projects/acme/memberships/{viewer_id}/roles/viewer", headers=_auth(admin_key))
        assert resp.status_code == 201

        assert client.get("/api/v1/projects/acme/roles", headers=_auth(viewer_key)).status_code == 200
        resp = client.put(
            "/api/v1/projects/acme/roles/viewer",
            json={"name": "viewer", "config": '{"rules": []}'},
            headers=_auth(viewer_key),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_unknown_project_is_forbidden(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        resp = client.get("/api/v1/projects/no-such-project/devices", headers=_auth(admin_key))
        assert resp.status_code == 403

    def test_invalid_role_config_is_rejected(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        resp = client.post(
            "/api/v1/projects/acme/roles", json={"name": "broken", "config": "not json"}, headers=_auth(admin_key)
        )
        assert resp.status_code == 422

    def test_binding_non_member_is_rejected(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, stores, _clock = api_client
        outsider_id = create_confirmed_user(stores, "outsider@example.com")
        resp = client.post(f"/api/v1/projects/acme/memberships/{outsider_id}/roles/admin", headers=_auth(admin_key))
        assert resp.status_code == 400

    def test_permission_check(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, stores, _clock = api_client
        resp = client.get("/api/v1/projects/acme/permissions/devices:delete", headers=_auth(admin_key))
        assert resp.json() == {"capability": "devices:delete", "decision": "allow"}

        resp = client.get("/api/v1/projects/no-such-project/permissions/read", headers=_auth(admin_key))
        assert resp.status_code == 200
        assert resp.json() == {"capability": "*:read", "decision": "deny"}


class TestServiceAccountRoutes:
    def test_service_account_key_authenticates_in_its_project(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        base = "/api/v1/projects/acme/service-accounts"

        assert client.post(base, json={"name": "ci"}, headers=_auth(admin_key)).status_code == 201
        resp = client.post(
            "/api/v1/projects/acme/roles", json={"name": "ci-reader", "config": VIEWER_CONFIG}, headers=_auth(admin_key)
        )
        assert resp.status_code == 201
        assert client.post(f"{base}/ci/roles/ci-reader", headers=_auth(admin_key)).status_code == 201

        resp = client.post(f"{base}/ci/keys", headers=_auth(admin_key))
        assert resp.status_code == 201
        sa_key = resp.json()["value"]
        assert sa_key.startswith("sak_")

        assert client.get("/api/v1/projects/acme/devices", headers=_auth(sa_key)).status_code == 200
        assert client.post(base, json={"name": "ci-2"}, headers=_auth(sa_key)).status_code == 403
        # Service accounts are not users.
        assert client.get("/api/v1/auth/me", headers=_auth(sa_key)).status_code == 403

        key_id = client.get(f"{base}/ci/keys", headers=_auth(admin_key)).json()[0]["id"]
        assert client.delete(f"{base}/ci/keys/{key_id}", headers=_auth(admin_key)).status_code == 204
        assert client.get("/api/v1/projects/acme/devices", headers=_auth(sa_key)).status_code == 401


class TestDeviceRoutes:
    """Registration, heartbeat liveness and device-reported statuses."""

    def _register(self, client: TestClient, admin_key: str, name: str) -> dict:
        resp = client.post("/api/v1/projects/acme/device-registration-tokens", headers=_auth(admin_key))
        assert resp.status_code == 201
        token_id = resp.json()["id"]
        resp = client.post(
            "/api/v1/projects/acme/devices/register", json={"registration_token": token_id, "name": name}
        )
        assert resp.status_code == 201, resp.text
        return {"token_id": token_id, **resp.json()}

    def test_register_heartbeat_and_expire(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, clock = api_client
        device = self._register(client, admin_key, "edge-hb")
        assert device["access_key"].startswith("dak_")

        resp = client.get("/api/v1/projects/acme/devices/edge-hb", headers=_auth(admin_key))
        assert resp.json()["status"] == "offline"

        resp = client.post(
            "/api/v1/projects/acme/devices/heartbeat",
            json={"info": {"os": "debian"}},
            headers={"X-Device-Key": device["access_key"]},
        )
        assert resp.status_code == 200, resp.text
        ttl = resp.json()["ttl_seconds"]

        listed = {d["name"]: d for d in client.get("/api/v1/projects/acme/devices", headers=_auth(admin_key)).json()}
        assert listed["edge-hb"]["status"] == "online"
        assert listed["edge-hb"]["info"] == {"os": "debian"}

        clock.advance(ttl + 1)
        resp = client.get("/api/v1/projects/acme/devices/edge-hb", headers=_auth(admin_key))
        assert resp.json()["status"] == "offline"

    def test_registration_token_is_single_use(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        device = self._register(client, admin_key, "edge-once")
        resp = client.post(
            "/api/v1/projects/acme/devices/register", json={"registration_token": device["token_id"]}
        )
        assert resp.status_code == 400

        resp = client.get(
            f"/api/v1/projects/acme/device-registration-tokens/{device['token_id']}", headers=_auth(admin_key)
        )
        assert resp.json()["device_access_key_id"] == device["access_key_id"]

    def test_register_unknown_token_or_project(self, client: TestClient) -> None:
        body = {"registration_token": "drt_missing"}
        assert client.post("/api/v1/projects/acme/devices/register", json=body).status_code == 404
        assert client.post("/api/v1/projects/no-such-project/devices/register", json=body).status_code == 404

    def test_heartbeat_rejects_bad_keys(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, stores, _clock = api_client
        device = self._register(client, admin_key, "edge-key")
        headers = {"X-Device-Key": device["access_key"]}

        assert client.post("/api/v1/projects/acme/devices/heartbeat").status_code == 401
        resp = client.post("/api/v1/projects/acme/devices/heartbeat", headers={"X-Device-Key": "dak_forged"})
        assert resp.status_code == 401

        # A valid key presented under another project is not valid there.
        owner_key = mint_user_access_key(stores, create_confirmed_user(stores, "globex@example.com"))
        client.post("/api/v1/projects", json={"name": "globex"}, headers=_auth(owner_key))
        assert client.post("/api/v1/projects/globex/devices/heartbeat", headers=headers).status_code == 401

    def test_labels(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        self._register(client, admin_key, "edge-labels")
        base = "/api/v1/projects/acme/devices/edge-labels"

        assert client.put(f"{base}/labels/region", json={"value": "eu"}, headers=_auth(admin_key)).status_code == 200
        assert client.put(f"{base}/labels/region", json={"value": "us"}, headers=_auth(admin_key)).status_code == 200
        assert client.get(base, headers=_auth(admin_key)).json()["labels"] == {"region": "us"}

        assert client.delete(f"{base}/labels/region", headers=_auth(admin_key)).status_code == 204
        assert client.delete(f"{base}/labels/region", headers=_auth(admin_key)).status_code == 404


class TestApplicationRoutes:
    def test_releases_and_device_status(self, client: TestClient, api_client: ApiClient) -> None:
        _c, admin_key, _stores, _clock = api_client
        base = "/api/v1/projects/acme/applications"

        resp = client.post(base, json={"name": "telemetry", "description": "metrics"}, headers=_auth(admin_key))
        assert resp.status_code == 201, resp.text
        app_id = resp.json()["id"]

        assert client.get(f"{base}/telemetry/releases/latest", headers=_auth(admin_key)).status_code == 404
        first = client.post(f"{base}/telemetry/releases", json={"config": "v: 1"}, headers=_auth(admin_key)).json()
        second = client.post(f"{base}/telemetry/releases", json={"config": "v: 2"}, headers=_auth(admin_key)).json()
        latest = client.get(f"{base}/telemetry/releases/latest", headers=_auth(admin_key)).json()
        assert latest["id"] == second["id"]

        device = TestDeviceRoutes()._register(client, admin_key, "edge-app")
        headers = {"X-Device-Key": device["access_key"]}
        resp = client.put(
            f"/api/v1/projects/acme/devices/self/applications/{app_id}/status",
            json={"current_release_id": first["id"]},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text

        resp = client.get(f"{base}/telemetry/releases/{first['id']}", headers=_auth(admin_key))
        assert resp.json()["device_count"] == 1
        resp = client.get(f"{base}/telemetry", headers=_auth(admin_key))
        assert resp.json()["device_count"] == 1

        resp = client.get(
            "/api/v1/projects/acme/devices/edge-app/applications/telemetry/status", headers=_auth(admin_key)
        )
        assert resp.json()["current_release_id"] == first["id"]

        resp = client.put(
            f"/api/v1/projects/acme/devices/self/applications/{app_id}/status",
            json={"current_release_id": "rel_missing"},
            headers=headers,
        )
        assert resp.status_code == 404
