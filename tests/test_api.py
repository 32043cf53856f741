import pytest

from chronos_auth.core.database import SessionLocal
from chronos_auth.models import User

LOGIN = "/api/v1/auth/login"
DEMO_HEADERS = {"X-Demo-User": "demo-user"}


def login(client, account="demo-user", pin="0000"):
    return client.post(LOGIN, json={"accountId": account, "pin": pin})


def _cookie_line(response, name):
    return next(h for h in response.headers.get_list("set-cookie") if h.startswith(f"{name}="))


class TestLoginFlow:
    def test_demo_login_sets_cookies(self, client):
        response = login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["user"]["id"] == "demo-user"
        assert body["user"]["isDemo"] is True
        assert body["tokens"] == {"expiresIn": 900, "refreshExpiresIn": 604800, "sessionExpiresIn": 86400}
        assert "accessToken" not in body["tokens"]
        assert "no-store" in response.headers["Cache-Control"]

        access = _cookie_line(response, "access_token").lower()
        assert "httponly" in access
        assert "samesite=strict" in access
        assert "httponly" in _cookie_line(response, "refresh_token").lower()
        assert "httponly" not in _cookie_line(response, "session_token").lower()

    def test_cookie_authenticates_follow_up_requests(self, client):
        login(client, "planner-pro", "7347")

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["id"] == "planner-pro"
        assert me.json()["user"]["role"] == "premium"
        assert me.json()["isDemo"] is False

        session = client.get("/api/v1/auth/session")
        assert session.status_code == 200
        assert session.json()["user"]["id"] == "planner-pro"

    def test_bad_input(self, client):
        response = client.post(LOGIN, json={"accountId": "demo-user", "pin": "12"})
        assert response.status_code == 400
        assert response.json()["error"] == "PIN must be exactly 4 digits"

    def test_wrong_pins_lead_to_lockout(self, client):
        remaining = []
        for _ in range(5):
            response = login(client, pin="1234")
            assert response.status_code == 401
            remaining.append(response.json()["attemptsRemaining"])
        assert remaining == [4, 3, 2, 1, 0]

        locked = login(client)
        assert locked.status_code == 429
        assert locked.json()["lockoutUntil"] > 0
        assert locked.json()["attemptsRemaining"] == 0
        assert int(locked.headers["Retry-After"]) > 0

    def test_me_requires_identity(self, client):
        response = client.get("/api/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_session_requires_session_cookie(self, client):
        assert client.get("/api/v1/auth/session").status_code == 401

    def test_demo_headers_authenticate(self, client):
        response = client.get("/api/v1/auth/me", headers=DEMO_HEADERS)
        assert response.status_code == 200
        assert response.json()["isDemo"] is True


class TestRefreshAndSignOut:
    def test_refresh_from_body(self, client):
        login(client, "planner-pro", "7347")
        refresh_token = client.cookies.get("refresh_token")

        response = client.post("/api/v1/auth/refresh", json={"refreshToken": refresh_token})
        assert response.status_code == 200
        assert response.json()["accessToken"]
        assert response.json()["expiresIn"] == 900

        me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {response.json()['accessToken']}"})
        assert me.json()["user"]["id"] == "planner-pro"

    def test_refresh_without_token(self, client):
        response = client.post("/api/v1/auth/refresh")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"

    def test_refresh_with_garbage(self, client):
        response = client.post("/api/v1/auth/refresh", json={"refreshToken": "garbage"})
        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_INVALID"

    def test_sign_out_revokes_tokens(self, client):
        login(client, "planner-pro", "7347")
        access_token = client.cookies.get("access_token")
        refresh_token = client.cookies.get("refresh_token")

        response = client.post("/api/v1/auth/signout")
        assert response.status_code == 200
        assert response.json() == {"success": True}

        client.cookies.clear()
        assert client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {access_token}"}).status_code == 401
        assert client.post("/api/v1/auth/refresh", json={"refreshToken": refresh_token}).status_code == 401


class TestGatedRoutes:
    def test_premium_analytics_needs_plan(self, client):
        denied = client.get("/api/v1/analytics/premium", headers=DEMO_HEADERS)
        assert denied.status_code == 402
        assert denied.json()["code"] == "FEATURE_UNAVAILABLE"
        assert denied.json()["upgradeRequired"] is True

        login(client, "planner-pro", "7347")
        allowed = client.get("/api/v1/analytics/premium")
        assert allowed.status_code == 200
        assert allowed.json()["data"]["userId"] == "planner-pro"
        assert allowed.json()["data"]["resources"]["goals"] == 0

    def test_goal_quota(self, client):
        for i in range(10):
            created = client.post("/api/v1/goals", json={"title": f"Goal {i}"}, headers=DEMO_HEADERS)
            assert created.status_code == 201
        assert created.json()["data"]["userId"] == "demo-user"

        refused = client.post("/api/v1/goals", json={"title": "One too many"}, headers=DEMO_HEADERS)
        assert refused.status_code == 402
        assert refused.json()["code"] == "USAGE_LIMIT_EXCEEDED"
        assert refused.json()["current"] == 10
        assert refused.json()["limit"] == 10

        usage = client.get("/api/v1/account/usage/goals", headers=DEMO_HEADERS).json()
        assert (usage["allowed"], usage["current"], usage["remaining"]) == (False, 10, 0)

    def test_goal_requires_title(self, client):
        response = client.post("/api/v1/goals", json={}, headers=DEMO_HEADERS)
        assert response.status_code == 400

    def test_goal_requires_identity(self, client):
        assert client.post("/api/v1/goals", json={"title": "x"}).status_code == 401

    def test_feature_summary(self, client):
        response = client.get("/api/v1/account/features", headers=DEMO_HEADERS)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["role"] == "user"
        assert data["features"]["premium-analytics"] is False
        assert data["limits"]["goals"] == 10

    def test_admin_routes_need_stored_admin_role(self, client):
        login(client, "planner-pro", "7347")
        assert client.get("/api/v1/admin/auth-stats").status_code == 403

        db = SessionLocal()
        db.add(User(id="planner-pro", email="pro@astralchronos.com", role="admin"))
        db.commit()
        db.close()

        stats = client.get("/api/v1/admin/auth-stats")
        assert stats.status_code == 200
        assert stats.json()["data"]["activeSessions"] >= 1
        assert "cleanupWorker" in stats.json()["data"]

        cleanup = client.post("/api/v1/admin/sessions/cleanup")
        assert cleanup.status_code == 200
        assert set(cleanup.json()["data"]) == {"sessions", "login_attempts", "rate_limit_entries", "store_entries"}


class TestOperational:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["readiness"]["database"]["ok"] is True
        assert body["readiness"]["state_store"]["backend"] == "memory"

    def test_metrics(self, client):
        login(client)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "chronos_auth_login_attempts_total" in response.text
        assert "chronos_auth_http_requests_total" in response.text

    def test_security_and_rate_limit_headers(self, client):
        response = client.get("/api/v1/auth/me", headers={**DEMO_HEADERS, "X-Request-ID": "req-1"})
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Request-ID"] == "req-1"
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert int(response.headers["X-RateLimit-Remaining"]) < 100

    @pytest.mark.parametrize("path", ["/", "/health"])
    def test_exempt_paths_have_no_rate_limit_headers(self, client, path):
        assert "X-RateLimit-Limit" not in client.get(path).headers


def test_login_errors_share_the_error_body(client):
    body = login(client, pin="9999").json()
    assert body["success"] is False
    assert body["code"] == "INVALID_CREDENTIALS"
    assert body["error"] == "Invalid credentials"
    assert body["path"] == LOGIN
    assert "timestamp" in body
