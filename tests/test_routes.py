"""
Gatekeeper - HTTP Surface Tests

Integration tests for the /api/v1/auth endpoints, error rendering and the
gateway middleware.

Run with: pytest tests/test_routes.py -v
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlmodel import select

from gatekeeper.auth import admin
from gatekeeper.auth.dependencies import get_current_claims, require_any_permission
from gatekeeper.auth.models import User
from gatekeeper.auth.tokens import AccessClaims
from gatekeeper.gateway.ratelimit import FixedWindowRateLimiter, MemoryRateLimitStore, RateLimiters, RedisRateLimitStore

from tests.conftest import DEMO_EMAIL, DEMO_PASSWORD, auth_headers, login_user


# =============================================================================
# LOGIN ENDPOINT TESTS
# =============================================================================

class TestLoginEndpoint:

    def test_login_success(self, client):
        response = login_user(client)

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["refresh_token"]
        assert data["user"]["email"] == DEMO_EMAIL
        assert "users.create" in data["user"]["permissions"]
        assert "system.settings" not in data["user"]["permissions"]
        assert "password_hash" not in data["user"]

    def test_login_invalid_password(self, client):
        response = login_user(client, password="WrongPassword123")

        assert response.status_code == 401
        body = response.json()
        assert body["detail"] == "Invalid credentials"
        assert body["error_code"] == "invalid_credentials"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_login_user_not_found(self, client):
        response = login_user(client, email="nobody@demo.com")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_login_unknown_tenant(self, client):
        response = login_user(client, tenant="nowhere")

        assert response.status_code == 404
        assert response.json()["error_code"] == "tenant_not_found"

    def test_login_lockout(self, client):
        for _ in range(5):
            assert login_user(client, password="WrongPassword123").status_code == 401

        response = login_user(client)

        assert response.status_code == 423
        assert response.json()["error_code"] == "account_locked"
        assert "locked_until" in response.json()

    def test_malformed_email_rejected(self, client):
        response = client.post(
            "/api/v1/auth/login",
            json={"tenant_code": "demo", "email": "not-an-email", "password": "x"},
        )

        assert response.status_code == 422


# =============================================================================
# TOKEN LIFECYCLE
# =============================================================================

class TestTokenEndpoints:

    def test_refresh_rotates(self, client):
        tokens = login_user(client).json()

        response = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 200
        assert response.json()["refresh_token"] != tokens["refresh_token"]

    def test_refresh_replay_is_rejected(self, client):
        tokens = login_user(client).json()
        client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        response = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 401
        assert response.json()["error_code"] == "reused_token"

    def test_validate(self, client):
        tokens = login_user(client).json()

        response = client.post("/api/v1/auth/validate", json={"access_token": tokens["access_token"]})

        assert response.status_code == 200
        claims = response.json()
        assert claims["email"] == DEMO_EMAIL
        assert claims["sid"] == tokens["session_id"]

    def test_validate_live(self, client):
        tokens = login_user(client).json()

        response = client.post(
            "/api/v1/auth/validate",
            json={"access_token": tokens["access_token"], "live": True},
        )

        assert response.status_code == 200
        assert "users.create" in response.json()["permissions"]

    def test_validate_garbage(self, client):
        response = client.post("/api/v1/auth/validate", json={"access_token": "garbage"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_token"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_validate_with_required_permissions(self, client):
        tokens = login_user(client).json()

        granted = client.post(
            "/api/v1/auth/validate",
            json={"access_token": tokens["access_token"], "required_permissions": ["users.read", "orders.read"]},
        )
        missing = client.post(
            "/api/v1/auth/validate",
            json={"access_token": tokens["access_token"], "required_permissions": ["users.read", "system.settings"]},
        )

        assert granted.status_code == 200
        assert missing.status_code == 403
        assert missing.json()["error_code"] == "permission_denied"

    def test_logout(self, client):
        tokens = login_user(client).json()

        response = client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        again = client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 200
        assert response.json()["sessions_revoked"] == 1
        assert again.status_code == 200

    def test_logout_all_sessions(self, client):
        first = login_user(client).json()
        login_user(client)

        response = client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": first["refresh_token"], "all_sessions": True},
        )

        assert response.status_code == 200
        assert response.json()["sessions_revoked"] == 2
        sessions = client.get("/api/v1/auth/sessions", headers=auth_headers(first["access_token"]))
        assert sessions.json()["total"] == 0


# =============================================================================
# AUTHENTICATED ENDPOINTS
# =============================================================================

class TestAuthenticatedEndpoints:

    def test_me(self, client):
        tokens = login_user(client).json()

        response = client.get("/api/v1/auth/me", headers=auth_headers(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["roles"] == ["admin"]

    def test_me_requires_token(self, client):
        response = client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing authentication token"

    def test_sessions_marks_current(self, client):
        tokens = login_user(client).json()
        login_user(client)

        response = client.get("/api/v1/auth/sessions", headers=auth_headers(tokens["access_token"]))

        data = response.json()
        assert data["total"] == 2
        current = [s for s in data["sessions"] if s["is_current"]]
        assert [s["session_id"] for s in current] == [tokens["session_id"]]

    def test_change_password(self, client):
        tokens = login_user(client).json()

        response = client.put(
            "/api/v1/auth/change-password",
            headers=auth_headers(tokens["access_token"]),
            json={"current_password": DEMO_PASSWORD, "new_password": "Sturdier456"},
        )

        assert response.status_code == 200
        assert response.json()["sessions_revoked"] == 1
        assert login_user(client).status_code == 401
        assert login_user(client, password="Sturdier456").status_code == 200

    def test_change_password_weak(self, client):
        tokens = login_user(client).json()

        response = client.put(
            "/api/v1/auth/change-password",
            headers=auth_headers(tokens["access_token"]),
            json={"current_password": DEMO_PASSWORD, "new_password": "short"},
        )

        assert response.status_code == 422


class TestCreateUserEndpoint:

    def test_admin_can_create_user(self, client):
        tokens = login_user(client).json()

        response = client.post(
            "/api/v1/auth/users",
            headers=auth_headers(tokens["access_token"]),
            json={"email": "clerk@demo.com", "password": "ClerkPass123", "roles": ["user"]},
        )

        assert response.status_code == 201
        assert response.json()["email"] == "clerk@demo.com"
        assert response.json()["tenant_id"] == tokens["user"]["tenant_id"]
        assert login_user(client, email="clerk@demo.com", password="ClerkPass123").status_code == 200

    def test_plain_user_cannot_create_user(self, client):
        admin_tokens = login_user(client).json()
        client.post(
            "/api/v1/auth/users",
            headers=auth_headers(admin_tokens["access_token"]),
            json={"email": "clerk@demo.com", "password": "ClerkPass123", "roles": ["user"]},
        )
        clerk = login_user(client, email="clerk@demo.com", password="ClerkPass123").json()

        response = client.post(
            "/api/v1/auth/users",
            headers=auth_headers(clerk["access_token"]),
            json={"email": "another@demo.com", "password": "AnotherPass123"},
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "permission_denied"

    def test_duplicate_email(self, client):
        tokens = login_user(client).json()

        response = client.post(
            "/api/v1/auth/users",
            headers=auth_headers(tokens["access_token"]),
            json={"email": DEMO_EMAIL, "password": "ClerkPass123"},
        )

        assert response.status_code == 409


class TestUserAdministration:

    def _create_clerk(self, client, headers, email="clerk@demo.com"):
        response = client.post(
            "/api/v1/auth/users",
            headers=headers,
            json={"email": email, "password": "ClerkPass123", "roles": ["user"]},
        )
        assert response.status_code == 201
        return response.json()

    def test_list_users_is_tenant_scoped(self, client, db_session):
        other = admin.create_tenant(db_session, "other")
        admin.create_user(db_session, other.id, "outsider@other.com", "Password123")
        headers = auth_headers(login_user(client).json()["access_token"])
        self._create_clerk(client, headers)

        response = client.get("/api/v1/auth/users", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert [u["email"] for u in data["users"]] == ["admin@demo.com", "clerk@demo.com"]
        assert data["total"] == 2
        assert data["users"][0]["roles"] == ["admin"]

    def test_list_users_paging(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        self._create_clerk(client, headers)

        response = client.get("/api/v1/auth/users?page=1&page_size=1", headers=headers)

        assert [u["email"] for u in response.json()["users"]] == ["clerk@demo.com"]
        assert client.get("/api/v1/auth/users?page_size=500", headers=headers).status_code == 422

    def test_get_user_of_other_tenant_is_not_found(self, client, db_session):
        other = admin.create_tenant(db_session, "other")
        outsider = admin.create_user(db_session, other.id, "outsider@other.com", "Password123")
        headers = auth_headers(login_user(client).json()["access_token"])

        response = client.get(f"/api/v1/auth/users/{outsider.id}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_update_user_roles_and_email(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        clerk = self._create_clerk(client, headers)

        response = client.put(
            f"/api/v1/auth/users/{clerk['id']}",
            headers=headers,
            json={"email": "Lead@Demo.com", "roles": ["manager"], "is_verified": True},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["email"] == "lead@demo.com"
        assert data["roles"] == ["manager"]
        assert data["is_verified"] is True
        relogin = login_user(client, email="lead@demo.com", password="ClerkPass123").json()
        assert "reports.sales" in relogin["user"]["permissions"]
        assert "orders.create" not in relogin["user"]["permissions"]

    def test_update_user_unknown_role_changes_nothing(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        clerk = self._create_clerk(client, headers)

        response = client.put(
            f"/api/v1/auth/users/{clerk['id']}",
            headers=headers,
            json={"roles": ["manager", "wizard"]},
        )

        assert response.status_code == 404
        assert client.get(f"/api/v1/auth/users/{clerk['id']}", headers=headers).json()["roles"] == ["user"]

    def test_update_user_email_conflict(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        clerk = self._create_clerk(client, headers)

        response = client.put(f"/api/v1/auth/users/{clerk['id']}", headers=headers, json={"email": DEMO_EMAIL})

        assert response.status_code == 409

    def test_deactivation_signs_user_out(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        clerk = self._create_clerk(client, headers)
        clerk_tokens = login_user(client, email="clerk@demo.com", password="ClerkPass123").json()

        response = client.put(f"/api/v1/auth/users/{clerk['id']}", headers=headers, json={"is_active": False})

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": clerk_tokens["refresh_token"]}).status_code == 401
        assert login_user(client, email="clerk@demo.com", password="ClerkPass123").status_code == 401

    def test_delete_user_deactivates(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        clerk = self._create_clerk(client, headers)

        response = client.delete(f"/api/v1/auth/users/{clerk['id']}", headers=headers)

        assert response.status_code == 204
        assert client.get(f"/api/v1/auth/users/{clerk['id']}", headers=headers).json()["is_active"] is False

    def test_cannot_delete_self(self, client):
        tokens = login_user(client).json()

        response = client.delete(
            f"/api/v1/auth/users/{tokens['user']['id']}",
            headers=auth_headers(tokens["access_token"]),
        )

        assert response.status_code == 409

    def test_plain_user_cannot_read_users(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])
        self._create_clerk(client, headers)
        clerk_headers = auth_headers(login_user(client, email="clerk@demo.com", password="ClerkPass123").json()["access_token"])

        assert client.get("/api/v1/auth/users", headers=clerk_headers).status_code == 403


class TestTenantAdministration:

    def _operator_headers(self, client, db_session, demo_tenant):
        role = admin.create_role(db_session, demo_tenant.id, "operator", permission_codes=["system.settings"])
        demo_admin = db_session.exec(select(User).where(User.email == DEMO_EMAIL)).one()
        admin.assign_role(db_session, demo_admin.id, role.id)
        return auth_headers(login_user(client).json()["access_token"])

    def test_tenant_admin_lacks_platform_permission(self, client):
        headers = auth_headers(login_user(client).json()["access_token"])

        assert client.get("/api/v1/auth/tenants", headers=headers).status_code == 403

    def test_create_tenant_installs_system_roles(self, client, db_session, demo_tenant):
        headers = self._operator_headers(client, db_session, demo_tenant)

        response = client.post("/api/v1/auth/tenants", headers=headers, json={"code": "Acme", "name": "Acme Corp"})

        assert response.status_code == 201
        tenant = response.json()
        assert tenant["code"] == "acme"
        assert tenant["is_active"] is True
        assert admin.get_role(db_session, UUID(tenant["id"]), "admin").is_system is True

    def test_duplicate_tenant_code(self, client, db_session, demo_tenant):
        headers = self._operator_headers(client, db_session, demo_tenant)

        response = client.post("/api/v1/auth/tenants", headers=headers, json={"code": "demo", "name": "Again"})

        assert response.status_code == 409

    def test_list_and_get_tenants(self, client, db_session, demo_tenant):
        headers = self._operator_headers(client, db_session, demo_tenant)
        admin.create_tenant(db_session, "zeta", "Zeta")

        listed = client.get("/api/v1/auth/tenants", headers=headers).json()
        fetched = client.get(f"/api/v1/auth/tenants/{demo_tenant.id}", headers=headers)

        assert [t["code"] for t in listed["tenants"]] == ["demo", "zeta"]
        assert fetched.json()["code"] == "demo"
        assert client.get(f"/api/v1/auth/tenants/{uuid4()}", headers=headers).status_code == 404

    def test_deactivated_tenant_refuses_login(self, client, db_session, demo_tenant):
        headers = self._operator_headers(client, db_session, demo_tenant)
        zeta = admin.create_tenant(db_session, "zeta", "Zeta")
        admin.create_user(db_session, zeta.id, "z@zeta.com", "Password123")

        response = client.put(
            f"/api/v1/auth/tenants/{zeta.id}",
            headers=headers,
            json={"name": "Zeta Ltd", "is_active": False},
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Zeta Ltd"
        refused = login_user(client, email="z@zeta.com", password="Password123", tenant="zeta")
        assert refused.status_code == 404
        assert refused.json()["error_code"] == "tenant_not_found"


def test_require_any_permission_route(app, client):
    router = APIRouter()

    @router.get("/reports")
    @require_any_permission("reports.sales", "system.settings")
    async def reports(claims: AccessClaims = Depends(get_current_claims)):
        return {"ok": True}

    @router.get("/settings")
    @require_any_permission("system.settings")
    async def settings_page(claims: AccessClaims = Depends(get_current_claims)):
        return {"ok": True}

    app.include_router(router, prefix="/extra")
    headers = auth_headers(login_user(client).json()["access_token"])

    assert client.get("/extra/reports", headers=headers).status_code == 200
    assert client.get("/extra/settings", headers=headers).status_code == 403


# =============================================================================
# GATEWAY MIDDLEWARE
# =============================================================================

class TestGateway:

    def test_security_headers(self, client):
        response = client.get("/")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"]

    def test_rate_limit_headers_on_every_response(self, client):
        response = client.get("/")

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert int(response.headers["X-RateLimit-Remaining"]) == 99
        assert 0 <= int(response.headers["X-RateLimit-Reset"]) <= 60

    def test_health_is_exempt(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_ip_limit_rejects_with_429(self, app, client):
        store = MemoryRateLimitStore()
        app.state.rate_limiters = RateLimiters(
            ip=FixedWindowRateLimiter(store, capacity=3, window_seconds=60, name="ip"),
            user=FixedWindowRateLimiter(store, capacity=10, window_seconds=60, name="user"),
        )
        headers = {"X-Forwarded-For": "203.0.113.50, 10.0.0.1"}

        statuses = [client.get("/", headers=headers).status_code for _ in range(4)]
        rejected = client.get("/", headers=headers)

        assert statuses == [200, 200, 200, 429]
        assert rejected.json()["error_code"] == "rate_limited"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert int(rejected.headers["Retry-After"]) <= 60

        # A different client address has its own budget
        assert client.get("/", headers={"X-Forwarded-For": "203.0.113.51"}).status_code == 200

    def test_authenticated_requests_use_user_limit(self, app, client):
        tokens = login_user(client).json()
        store = MemoryRateLimitStore()
        app.state.rate_limiters = RateLimiters(
            ip=FixedWindowRateLimiter(store, capacity=1, window_seconds=60, name="ip"),
            user=FixedWindowRateLimiter(store, capacity=5, window_seconds=60, name="user"),
        )
        headers = auth_headers(tokens["access_token"])

        responses = [client.get("/api/v1/auth/me", headers=headers) for _ in range(5)]

        assert all(r.status_code == 200 for r in responses)
        assert responses[-1].headers["X-RateLimit-Limit"] == "5"
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 429

    def test_x_real_ip_fallback(self, app, client):
        store = MemoryRateLimitStore()
        app.state.rate_limiters = RateLimiters(
            ip=FixedWindowRateLimiter(store, capacity=1, window_seconds=60, name="ip"),
            user=FixedWindowRateLimiter(store, capacity=1, window_seconds=60, name="user"),
        )

        assert client.get("/", headers={"X-Real-IP": "192.0.2.1"}).status_code == 200
        assert client.get("/", headers={"X-Real-IP": "192.0.2.2"}).status_code == 200
        assert client.get("/", headers={"X-Real-IP": "192.0.2.1"}).status_code == 429

    def test_unreachable_counter_store_returns_503(self, app, client):
        redis_client = MagicMock()
        redis_client.aclose = AsyncMock()
        redis_client.register_script.return_value = AsyncMock(side_effect=RedisConnectionError("refused"))
        store = RedisRateLimitStore(redis_client)
        app.state.rate_limiters = RateLimiters(
            ip=FixedWindowRateLimiter(store, capacity=10, window_seconds=60, name="ip"),
            user=FixedWindowRateLimiter(store, capacity=10, window_seconds=60, name="user"),
        )

        response = client.get("/")

        assert response.status_code == 503
        assert response.json()["error_code"] == "persistence_unavailable"
