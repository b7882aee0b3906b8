"""
tests/test_auth_flow.py -- End-to-end tests for the /api/v1/auth/* routes.

Runs the real app with an in-memory store and FakeHomeAssistantClient behind
it; the OAuth round trip is driven by hand (initiate -> read state from the
authorize URL -> hit the callback) since there is no browser in between.

Coverage:
  - OAuth login: redirect to HA, callback sets cookies and returns to the
    recorded path, replayed state lands on /login?error=
  - ?format=json variant, bad instance URL
  - provider errors and HA outages on the callback
  - local password login, bad credentials, disabled accounts, throttle 429
  - logout idempotency, /me, /csrf, /ha/token
  - CSRF: missing token and cross-origin Origin rejected
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from auth.errors import UpstreamUnavailable
from auth.homeassistant import ProviderRejected
from auth.sessions import SESSION_COOKIE_NAME
from auth.tokens import CSRF_COOKIE_NAME, CSRF_HEADER_NAME
from conftest import ApiHarness, create_local_user

HA = "https://ha.example.com"


@pytest.fixture(autouse=True)
def fresh_client(api_harness: ApiHarness):
    api_harness.sign_out()
    api_harness.reset_throttle()
    api_harness.ha.exchange_error = None
    api_harness.ha.refresh_errors = []
    yield


def _start(harness: ApiHarness, redirect: str = "/calendar") -> str:
    resp = harness.client.get("/api/v1/auth/login", params={"url": HA, "redirect": redirect})
    assert resp.status_code == 302
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


def _callback(harness: ApiHarness, state: str, code: str = "auth-code"):
    return harness.client.get("/api/v1/auth/callback", params={"code": code, "state": state})


def _error_of(location: str) -> str:
    parsed = urlparse(location)
    assert parsed.path == "/login"
    return parse_qs(parsed.query)["error"][0]


class TestOAuthLogin:
    def test_login_redirects_to_home_assistant(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.get("/api/v1/auth/login", params={"url": HA + "/", "redirect": "/calendar"})
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        query = parse_qs(location.query)
        assert f"{location.scheme}://{location.netloc}{location.path}" == HA + "/auth/authorize"
        assert query["client_id"] == ["http://testserver"]
        assert query["redirect_uri"] == ["http://testserver/api/v1/auth/callback"]

    def test_full_round_trip(self, api_harness: ApiHarness) -> None:
        state = _start(api_harness, "/calendar")
        resp = _callback(api_harness, state)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/calendar"
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE_NAME in resp.cookies
        assert CSRF_COOKIE_NAME in resp.cookies

        me = api_harness.client.get("/api/v1/auth/me")
        assert me.status_code == 200
        body = me.json()
        assert body["display_name"] == "Alice"
        assert body["ha_instance_url"] == HA
        assert body["role"] is None
        assert body["permissions"] == []

    def test_replayed_state_is_rejected(self, api_harness: ApiHarness) -> None:
        state = _start(api_harness)
        assert _callback(api_harness, state).headers["location"] == "/calendar"

        api_harness.sign_out()
        replay = _callback(api_harness, state)
        assert replay.status_code == 302
        assert _error_of(replay.headers["location"])
        assert SESSION_COOKIE_NAME not in replay.cookies

    def test_offsite_redirect_is_dropped(self, api_harness: ApiHarness) -> None:
        state = _start(api_harness, "//evil.example/phish")
        assert _callback(api_harness, state).headers["location"] == "/"

    def test_json_format(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.get("/api/v1/auth/login", params={"url": HA, "format": "json"})
        assert resp.status_code == 200
        assert resp.json()["authorization_url"].startswith(HA + "/auth/authorize?")

    def test_bad_instance_url(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.get("/api/v1/auth/login", params={"url": "not a url"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    def test_provider_error_param(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.get(
            "/api/v1/auth/callback", params={"error": "access_denied", "error_description": "User said no"}
        )
        assert resp.status_code == 302
        assert _error_of(resp.headers["location"]) == "User said no"

    def test_missing_code(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.get("/api/v1/auth/callback", params={"state": "abc"})
        assert _error_of(resp.headers["location"]) == "Missing code or state"

    def test_rejected_code(self, api_harness: ApiHarness) -> None:
        api_harness.ha.exchange_error = ProviderRejected("invalid_grant")
        resp = _callback(api_harness, _start(api_harness))
        assert resp.status_code == 302
        assert _error_of(resp.headers["location"]) == "Home Assistant rejected the login."

    def test_home_assistant_unreachable(self, api_harness: ApiHarness, caplog: pytest.LogCaptureFixture) -> None:
        api_harness.ha.exchange_error = UpstreamUnavailable("connection refused")
        state = _start(api_harness)
        with caplog.at_level("WARNING", logger="homeboard.api.auth"):
            resp = _callback(api_harness, state)
        assert resp.status_code == 302
        assert _error_of(resp.headers["location"]) == "Home Assistant is unreachable."
        assert "Home Assistant unavailable: connection refused" in caplog.text

    def test_initiation_throttled_after_bad_callbacks(self, api_harness: ApiHarness) -> None:
        for _ in range(5):
            _callback(api_harness, "0" * 64)
        resp = api_harness.client.get("/api/v1/auth/login", params={"url": HA})
        assert resp.status_code == 429
        assert int(resp.headers["retry-after"]) > 0


class TestLocalLogin:
    def test_success(self, api_harness: ApiHarness) -> None:
        user_id = create_local_user(api_harness.store, "bob", role="member")
        resp = api_harness.client.post(
            "/api/v1/auth/login", json={"username": "bob", "password": "correct-horse-battery"}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["user_id"] == user_id
        assert body["role"] == "member"
        assert "action:locks" in body["permissions"]
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE_NAME in resp.cookies
        assert api_harness.store.find_user(user_id).last_login_at is not None

    def test_wrong_password_and_unknown_user_look_the_same(self, api_harness: ApiHarness) -> None:
        create_local_user(api_harness.store, "carol")
        wrong = api_harness.client.post("/api/v1/auth/login", json={"username": "carol", "password": "nope"})
        unknown = api_harness.client.post("/api/v1/auth/login", json={"username": "nobody", "password": "nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["detail"] == "bad_credentials"

    def test_disabled_account(self, api_harness: ApiHarness) -> None:
        create_local_user(api_harness.store, "dave", status="disabled")
        resp = api_harness.client.post(
            "/api/v1/auth/login", json={"username": "dave", "password": "correct-horse-battery"}
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "account_disabled"

    def test_sixth_attempt_is_throttled(self, api_harness: ApiHarness) -> None:
        create_local_user(api_harness.store, "erin")
        for _ in range(5):
            resp = api_harness.client.post("/api/v1/auth/login", json={"username": "erin", "password": "bad"})
            assert resp.status_code == 401
        resp = api_harness.client.post(
            "/api/v1/auth/login", json={"username": "erin", "password": "correct-horse-battery"}
        )
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert resp.headers["retry-after"] == "900"

    def test_validation_error_envelope(self, api_harness: ApiHarness) -> None:
        resp = api_harness.client.post("/api/v1/auth/login", json={"username": ""})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_logout_is_idempotent(self, api_harness: ApiHarness) -> None:
        user_id = create_local_user(api_harness.store, "frank")
        api_harness.sign_in(user_id)
        token = api_harness.client.cookies.get(SESSION_COOKIE_NAME)

        assert api_harness.client.post("/api/v1/auth/logout").status_code == 200
        assert api_harness.state.sessions.validate(token) is None
        assert api_harness.client.post("/api/v1/auth/logout").status_code == 200

        api_harness.client.cookies.set(SESSION_COOKIE_NAME, token)
        assert api_harness.client.get("/api/v1/auth/me").status_code == 401

    def test_me(self, api_harness: ApiHarness) -> None:
        user_id = create_local_user(api_harness.store, "grace", role="owner")
        api_harness.sign_in(user_id)
        body = api_harness.client.get("/api/v1/auth/me").json()
        assert body["username"] == "grace"
        assert body["role"] == "owner"
        assert "users:manage" in body["permissions"]
        assert body["session_expires_at"]

    def test_csrf_endpoint(self, api_harness: ApiHarness) -> None:
        user_id = create_local_user(api_harness.store, "heidi")
        expected = api_harness.sign_in(user_id)
        resp = api_harness.client.get("/api/v1/auth/csrf")
        assert resp.json()["csrf_token"] == expected
        assert resp.cookies.get(CSRF_COOKIE_NAME) == expected

    def test_ha_token_after_oauth_login(self, api_harness: ApiHarness) -> None:
        _callback(api_harness, _start(api_harness))
        resp = api_harness.client.get("/api/v1/ha/token")
        assert resp.status_code == 200
        body = resp.json()
        assert body["access_token"].startswith("access-")
        assert body["expires_at"]

    def test_ha_token_without_credential(self, api_harness: ApiHarness) -> None:
        user_id = create_local_user(api_harness.store, "ivan")
        api_harness.sign_in(user_id)
        resp = api_harness.client.get("/api/v1/ha/token")
        assert resp.status_code == 401
        assert resp.json()["error"]["detail"] == "reauth"


class TestCsrf:
    def _owner(self, harness: ApiHarness, name: str) -> str:
        return harness.sign_in(create_local_user(harness.store, name, role="owner"))

    def test_missing_token_rejected(self, api_harness: ApiHarness) -> None:
        self._owner(api_harness, "judy")
        resp = api_harness.client.put("/api/v1/settings/unifi", json={"protect_api_key": "k"})
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "csrf"

    def test_wrong_token_rejected(self, api_harness: ApiHarness) -> None:
        self._owner(api_harness, "ken")
        resp = api_harness.client.put(
            "/api/v1/settings/unifi", json={"protect_api_key": "k"}, headers={CSRF_HEADER_NAME: "0" * 64}
        )
        assert resp.status_code == 403

    def test_valid_token_accepted(self, api_harness: ApiHarness) -> None:
        csrf = self._owner(api_harness, "leo")
        resp = api_harness.client.put(
            "/api/v1/settings/unifi",
            json={"protect_api_key": "k"},
            headers={CSRF_HEADER_NAME: csrf, "Origin": "http://testserver"},
        )
        assert resp.status_code == 200

    def test_cross_origin_rejected_even_with_token(self, api_harness: ApiHarness) -> None:
        csrf = self._owner(api_harness, "mallory")
        resp = api_harness.client.put(
            "/api/v1/settings/unifi",
            json={"protect_api_key": "k"},
            headers={CSRF_HEADER_NAME: csrf, "Origin": "https://evil.example"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "csrf"

    def test_foreign_referer_rejected(self, api_harness: ApiHarness) -> None:
        self._owner(api_harness, "nina")
        resp = api_harness.client.post(
            "/api/v1/auth/logout", headers={"Referer": "https://evil.example/page"}
        )
        assert resp.status_code == 403
