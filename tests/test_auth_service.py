from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client import REGISTRY

from chronos_auth.config import Settings
from chronos_auth.core.exceptions import AuthenticationRequiredError, TokenInvalidError, ValidationError
from chronos_auth.schemas.auth import Role
from chronos_auth.services.auth_service import (
    DEMO_SESSION_ID,
    LOCKOUT_PREFIX,
    LOGIN_ATTEMPTS_PREFIX,
    SESSION_PREFIX,
    AuthService,
)
from chronos_auth.services.rate_limiter import RateLimiter

from conftest import bearer, make_request, run

IP = "198.51.100.10"


def _login(auth, account="demo-user", pin="0000", ip=IP):
    return auth.login({"accountId": account, "pin": pin}, client_ip=ip, user_agent="pytest")


class TestLogin:
    def test_demo_account_login(self, auth, store):
        result = _login(auth)

        assert result.success
        assert result.user.id == "demo-user"
        assert result.user.is_demo
        assert result.user.session_id == result.tokens.session_id
        session = store.get(f"{SESSION_PREFIX}{result.tokens.session_id}")
        assert session["userId"] == "demo-user"
        assert session["deviceId"] == result.tokens.device_id
        assert session["createdAt"] == session["lastActivity"]

    def test_premium_account_login(self, auth, tokens):
        result = _login(auth, "planner-pro", "7347")

        assert result.success
        assert result.user.role == Role.PREMIUM
        assert not result.user.is_demo
        payload = tokens.verify_token(result.tokens.access_token).payload
        assert payload.user.id == "planner-pro"
        assert payload.user.role == Role.PREMIUM

    def test_account_id_is_case_insensitive(self, auth):
        assert _login(auth, "Planner-Pro", "7347").success

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"accountId": "demo-user", "pin": "12a4"}, "PIN must be exactly 4 digits"),
            ({"accountId": "demo-user", "pin": "00000"}, "PIN must be exactly 4 digits"),
            ({"accountId": "<script>", "pin": "0000"}, "Account ID contains invalid characters"),
            ({"accountId": "ab", "pin": "0000"}, None),
            ({"pin": "0000"}, None),
            (None, None),
        ],
    )
    def test_invalid_input_is_rejected_before_any_accounting(self, auth, store, payload, message):
        result = auth.login(payload, client_ip=IP)

        assert not result.success
        assert result.reason == "invalid_input"
        if message:
            assert result.error == message
        assert store.keys(LOGIN_ATTEMPTS_PREFIX) == []

    def test_wrong_pin_counts_down_then_locks(self, auth, clock):
        results = [_login(auth, pin="1111") for _ in range(5)]
        assert [r.reason for r in results] == ["invalid_credentials"] * 5
        assert [r.attempts_remaining for r in results] == [4, 3, 2, 1, 0]
        assert all(r.error == "Invalid credentials" for r in results)

        locked = _login(auth)
        assert not locked.success
        assert locked.reason == "locked_out"
        assert locked.attempts_remaining == 0
        assert locked.lockout_until == clock.now + 15 * 60
        assert locked.retry_after == 15 * 60

    def test_lockout_is_scoped_to_account_and_ip(self, auth):
        for _ in range(6):
            _login(auth, pin="1111")
        assert _login(auth, ip="198.51.100.99").success
        assert _login(auth, "planner-pro", "7347").success

    def test_lockout_expires(self, auth, clock):
        for _ in range(6):
            _login(auth, pin="1111")
        clock.advance(15 * 60 - 1)
        assert _login(auth).reason == "locked_out"
        clock.advance(1)
        assert _login(auth).success

    def test_success_resets_attempts(self, auth, store):
        for _ in range(3):
            _login(auth, pin="1111")
        assert _login(auth).success
        assert store.get(f"{LOGIN_ATTEMPTS_PREFIX}demo-user:{IP}") is None
        assert _login(auth, pin="1111").attempts_remaining == 4

    def test_unknown_account_looks_like_wrong_pin(self, auth):
        unknown = _login(auth, "nobody-here", "0000")
        wrong_pin = _login(auth, "demo-user", "9999")

        assert unknown.reason == wrong_pin.reason == "invalid_credentials"
        assert unknown.error == wrong_pin.error
        assert unknown.attempts_remaining == 4

    def test_per_account_rate_limit(self, tokens, store, config, clock):
        auth = AuthService(
            tokens, store, config=config, clock=clock,
            login_limiter=RateLimiter(2, 60, message="Slow down", clock=clock),
        )
        assert _login(auth).success
        assert _login(auth).success

        limited = _login(auth)
        assert limited.reason == "rate_limited"
        assert limited.error == "Slow down"
        assert limited.retry_after == 60

    def test_per_ip_rate_limit(self, tokens, store, config, clock):
        auth = AuthService(
            tokens, store, config=config, clock=clock,
            ip_limiter=RateLimiter(1, 60, clock=clock),
        )
        assert _login(auth).success
        assert _login(auth, "planner-pro", "7347").reason == "rate_limited"

    def test_concurrent_wrong_pins_cannot_exceed_max_attempts(self, tokens, store, config, clock):
        auth = AuthService(
            tokens, store, config=config, clock=clock,
            login_limiter=RateLimiter(100, 60, clock=clock),
        )
        with ThreadPoolExecutor(max_workers=12) as pool:
            results = list(pool.map(lambda _: _login(auth, pin="9999"), range(12)))

        reasons = [r.reason for r in results]
        assert reasons.count("invalid_credentials") == 5
        assert reasons.count("locked_out") == 7
        assert sorted(r.attempts_remaining for r in results if r.reason == "invalid_credentials") == [0, 1, 2, 3, 4]
        assert len({r.lockout_until for r in results if r.reason == "locked_out"}) == 1
        assert _login(auth).reason == "locked_out"

    def test_check_does_not_count_an_attempt(self, auth):
        _login(auth, pin="1111")
        key = f"demo-user:{IP}"

        assert auth.check_login_attempts(key).attempts_remaining == 4
        assert auth.check_login_attempts(key).attempts_remaining == 4
        assert auth.reserve_login_attempt(key).attempts_remaining == 3

    def test_authenticate_user_reads_request(self, auth):
        request = make_request(
            headers={"User-Agent": "pytest"},
            body={"accountId": "planner-pro", "pin": "7347"},
        )
        result = run(auth.authenticate_user(request))
        assert result.success
        assert result.user.id == "planner-pro"

    def test_authenticate_user_with_malformed_body(self, auth):
        result = run(auth.authenticate_user(make_request(body=b"not json")))
        assert result.reason == "invalid_input"


class TestAuthContext:
    def test_access_token_authenticates(self, auth):
        login = _login(auth, "planner-pro", "7347")
        context = auth.get_auth_context(make_request(headers=bearer(login.tokens.access_token)))

        assert context.is_authenticated
        assert not context.is_demo
        assert context.user.id == "planner-pro"
        assert context.session_id == login.tokens.session_id
        assert context.device_id == login.tokens.device_id

    def test_access_token_cookie_authenticates(self, auth):
        login = _login(auth, "planner-pro", "7347")
        context = auth.get_auth_context(make_request(cookies={"access_token": login.tokens.access_token}))
        assert context.user.id == "planner-pro"

    @pytest.mark.parametrize("kind", ["refresh_token", "session_token"])
    def test_other_token_kinds_do_not_authenticate(self, auth, kind):
        login = _login(auth, "planner-pro", "7347")
        token = getattr(login.tokens, kind)
        assert not auth.get_auth_context(make_request(headers=bearer(token))).is_authenticated

    def test_anonymous_without_credentials(self, auth):
        context = auth.get_auth_context(make_request())
        assert not context.is_authenticated
        assert context.user is None

    @pytest.mark.parametrize(
        "headers",
        [{"X-Demo-User": "demo-user"}, {"X-Demo-Token": "demo-token-2024"}],
    )
    def test_demo_headers(self, auth, headers):
        context = auth.get_auth_context(make_request(headers=headers))
        assert context.is_authenticated
        assert context.is_demo
        assert context.user.id == "demo-user"
        assert context.session_id == DEMO_SESSION_ID

    @pytest.mark.parametrize(
        "headers",
        [
            {"X-Demo-User": "Demo-User"},
            {"X-Demo-User": "demo"},
            {"X-Demo-User": "demo-user\x00"},
            {"X-Demo-Token": "demo-token-2023"},
            {"X-Demo-Token": ""},
            {"X-Demo": "demo-user"},
        ],
    )
    def test_demo_headers_need_exact_match(self, auth, headers):
        assert not auth.get_auth_context(make_request(headers=headers)).is_authenticated

    def test_demo_headers_can_be_disabled(self, tokens, store, clock):
        config = Settings(JWT_SECRET="x" * 40, JWT_KDF_ITERATIONS=1000, DEMO_AUTH_ENABLED=False)
        auth = AuthService(tokens, store, config=config, clock=clock)
        assert not auth.get_auth_context(make_request(headers={"X-Demo-User": "demo-user"})).is_authenticated

    def test_valid_token_wins_over_demo_headers(self, auth):
        login = _login(auth, "planner-pro", "7347")
        headers = {**bearer(login.tokens.access_token), "X-Demo-User": "demo-user"}
        context = auth.get_auth_context(make_request(headers=headers))
        assert context.user.id == "planner-pro"
        assert not context.is_demo

    def test_invalid_token_falls_back_to_demo_headers(self, auth):
        headers = {**bearer("garbage"), "X-Demo-User": "demo-user"}
        assert auth.get_auth_context(make_request(headers=headers)).is_demo

    def test_activity_keeps_session_alive(self, auth, clock):
        login = _login(auth, "planner-pro", "7347")
        request_headers = bearer(login.tokens.access_token)

        clock.advance(23 * 3600)
        assert auth.get_auth_context(make_request(headers=request_headers)).is_authenticated
        clock.advance(23 * 3600)
        assert auth.get_auth_context(make_request(headers=request_headers)).is_authenticated

    def test_inactive_session_is_dropped(self, auth, store, clock):
        login = _login(auth, "planner-pro", "7347")
        clock.advance(24 * 3600 + 1)

        context = auth.get_auth_context(make_request(headers=bearer(login.tokens.access_token)))
        assert not context.is_authenticated
        assert store.get(f"{SESSION_PREFIX}{login.tokens.session_id}") is None

    def test_require_auth(self, auth):
        login = _login(auth, "planner-pro", "7347")
        assert auth.require_auth(make_request(headers=bearer(login.tokens.access_token))).id == "planner-pro"
        with pytest.raises(AuthenticationRequiredError):
            auth.require_auth(make_request())


class TestSignOutAndRefresh:
    def test_sign_out_revokes_session(self, auth, tokens, store):
        login = _login(auth, "planner-pro", "7347")
        request = make_request(headers=bearer(login.tokens.access_token))

        assert auth.sign_out(request) == {"success": True}
        assert tokens.is_token_blacklisted(login.tokens.session_id)
        assert store.get(f"{SESSION_PREFIX}{login.tokens.session_id}") is None
        assert not auth.get_auth_context(make_request(headers=bearer(login.tokens.access_token))).is_authenticated

    def test_sign_out_without_token_is_a_no_op(self, auth, tokens):
        assert auth.sign_out(make_request()) == {"success": True}
        assert tokens.blacklist_size() == 0

    def test_refresh_from_body(self, auth, tokens):
        login = _login(auth, "planner-pro", "7347")
        data = run(auth.refresh_tokens(make_request(body={"refreshToken": login.tokens.refresh_token})))

        assert data["refresh_token"] == login.tokens.refresh_token
        assert data["expires_in"] == 15 * 60
        payload = tokens.verify_token(data["access_token"]).payload
        assert payload.session_id == login.tokens.session_id

    def test_refresh_from_cookie(self, auth):
        login = _login(auth, "planner-pro", "7347")
        request = make_request(cookies={"refresh_token": login.tokens.refresh_token})
        assert run(auth.refresh_tokens(request))["access_token"]

    def test_refresh_requires_a_token(self, auth):
        with pytest.raises(ValidationError, match="Refresh token required"):
            run(auth.refresh_tokens(make_request(body={})))

    def test_refresh_rejects_access_token(self, auth):
        login = _login(auth, "planner-pro", "7347")
        with pytest.raises(TokenInvalidError):
            run(auth.refresh_tokens(make_request(body={"refreshToken": login.tokens.access_token})))

    def test_refresh_rejected_after_sign_out(self, auth):
        login = _login(auth, "planner-pro", "7347")
        auth.sign_out(make_request(headers=bearer(login.tokens.access_token)))
        with pytest.raises(TokenInvalidError):
            run(auth.refresh_tokens(make_request(body={"refreshToken": login.tokens.refresh_token})))


class TestMaintenance:
    def test_cleanup_expired_sessions(self, auth, store, clock):
        _login(auth, "planner-pro", "7347")
        clock.advance(20 * 3600)
        fresh = _login(auth, "demo-user", "0000")
        clock.advance(5 * 3600)

        assert auth.cleanup_expired_sessions() == 1
        assert store.keys(SESSION_PREFIX) == [f"{SESSION_PREFIX}{fresh.tokens.session_id}"]

    def test_cleanup_expired_sessions_resyncs_gauge(self, auth, store, clock):
        _login(auth, "planner-pro", "7347")
        clock.advance(8 * 24 * 3600)

        assert store.keys(SESSION_PREFIX) == []
        assert auth.cleanup_expired_sessions() == 0
        assert REGISTRY.get_sample_value("chronos_auth_active_sessions") == 0

        _login(auth, "demo-user", "0000")
        auth.cleanup_expired_sessions()
        assert REGISTRY.get_sample_value("chronos_auth_active_sessions") == 1

    def test_cleanup_login_attempts(self, auth, store, clock):
        store.incr(f"{LOGIN_ATTEMPTS_PREFIX}served:1", 3600)
        store.set(
            f"{LOCKOUT_PREFIX}served:1",
            {"count": 5, "lastAttempt": clock.now - 60, "lockoutUntil": clock.now - 1},
        )
        store.set(
            f"{LOCKOUT_PREFIX}locked:1",
            {"count": 5, "lastAttempt": clock.now - 60, "lockoutUntil": clock.now + 60},
        )
        store.incr(f"{LOGIN_ATTEMPTS_PREFIX}recent:1", 15 * 60)

        assert auth.cleanup_login_attempts() == 1
        assert store.keys(LOCKOUT_PREFIX) == [f"{LOCKOUT_PREFIX}locked:1"]
        assert store.keys(LOGIN_ATTEMPTS_PREFIX) == [f"{LOGIN_ATTEMPTS_PREFIX}recent:1"]

    def test_auth_stats(self, auth):
        _login(auth, "planner-pro", "7347")
        demo = _login(auth, "demo-user", "0000")
        auth.sign_out(make_request(headers=bearer(demo.tokens.access_token)))
        for _ in range(6):
            _login(auth, "demo-user", "1111", ip="198.51.100.20")

        assert auth.get_auth_stats() == {
            "activeSessions": 1,
            "activeAttempts": 1,
            "lockedAccounts": 1,
            "blacklistedSessions": 1,
        }
