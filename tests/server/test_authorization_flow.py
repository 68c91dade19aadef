"""End-to-end tests of the browser authorization flow against the app."""

import anyio
import pytest
from pytest_httpx import HTTPXMock
from starlette.testclient import TestClient

from authbridge.server.app import create_app
from flow_helpers import (
    BRIDGE_URL,
    CLIENT_REDIRECT_URI,
    form_token_of,
    pkce_pair,
    query_of,
)

UPSTREAM_AUTHORIZE = "https://github.com/login/oauth/authorize"
UPSTREAM_TOKEN = "https://github.com/login/oauth/access_token"
UPSTREAM_USER = "https://api.github.com/user"

APPROVAL_COOKIE = "__Host-authbridge_approval"
FLOW_COOKIE = "__Host-authbridge_flow"


@pytest.fixture
def test_client(settings, user_store):
    app = create_app(settings, user_store=user_store)
    with TestClient(app, base_url=BRIDGE_URL) as client:
        yield client


@pytest.fixture
def client_id(test_client) -> str:
    response = test_client.post(
        "/register",
        json={
            "redirect_uris": [CLIENT_REDIRECT_URI],
            "client_name": "Test Client",
            "token_endpoint_auth_method": "none",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["client_id"]


def authorize_params(client_id: str, challenge: str, **overrides) -> dict[str, str]:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": CLIENT_REDIRECT_URI,
        "scope": "read write",
        "state": "client-state-123",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return params


def mock_upstream_login(httpx_mock: HTTPXMock, *, user_id: int = 583231, name: str = "The Octocat"):
    httpx_mock.add_response(
        url=UPSTREAM_TOKEN,
        method="POST",
        json={"access_token": "gho_upstream", "token_type": "bearer", "scope": "read:user"},
    )
    httpx_mock.add_response(
        url=UPSTREAM_USER,
        json={
            "id": user_id,
            "login": "octocat",
            "name": name,
            "email": "octocat@github.com",
        },
    )


def consent_and_approve(test_client: TestClient, params: dict[str, str]) -> str:
    """Walk through the consent page; return the upstream ``state``."""
    page = test_client.get("/authorize", params=params, follow_redirects=False)
    assert page.status_code == 200
    approve = test_client.post(
        "/authorize",
        data={"request_token": form_token_of(page.text), "action": "approve"},
        follow_redirects=False,
    )
    assert approve.status_code == 302
    return query_of(approve.headers["location"])["state"]


class TestScenarioNewClient:
    def test_consent_then_callback_issues_code(
        self, test_client, client_id, user_store, httpx_mock: HTTPXMock
    ):
        _, challenge = pkce_pair()

        page = test_client.get(
            "/authorize", params=authorize_params(client_id, challenge), follow_redirects=False
        )
        assert page.status_code == 200
        assert "Test Client" in page.text
        assert CLIENT_REDIRECT_URI in page.text
        assert page.headers["x-frame-options"] == "DENY"

        approve = test_client.post(
            "/authorize",
            data={"request_token": form_token_of(page.text), "action": "approve"},
            follow_redirects=False,
        )
        assert approve.status_code == 302
        location = approve.headers["location"]
        assert location.startswith(UPSTREAM_AUTHORIZE)
        upstream_state = query_of(location)["state"]
        assert upstream_state != "client-state-123"
        assert test_client.cookies.get(APPROVAL_COOKIE)
        assert test_client.cookies.get(FLOW_COOKIE)

        mock_upstream_login(httpx_mock)
        callback = test_client.get(
            "/callback",
            params={"code": "ABC", "state": upstream_state},
            follow_redirects=False,
        )

        assert callback.status_code == 302
        redirect = callback.headers["location"]
        assert redirect.startswith(f"{CLIENT_REDIRECT_URI}?")
        params = query_of(redirect)
        assert params["state"] == "client-state-123"
        assert len(params["code"]) >= 43
        assert test_client.cookies.get(FLOW_COOKIE) is None

    def test_user_is_created_by_login(
        self, test_client, client_id, user_store, httpx_mock: HTTPXMock
    ):
        _, challenge = pkce_pair()
        state = consent_and_approve(test_client, authorize_params(client_id, challenge))
        mock_upstream_login(httpx_mock)

        test_client.get(
            "/callback", params={"code": "ABC", "state": state}, follow_redirects=False
        )

        user = anyio.run(user_store.get_user_by_provider_id, 583231)
        assert user is not None
        assert user.login_name == "octocat"

    def test_deny_redirects_with_access_denied(self, test_client, client_id):
        _, challenge = pkce_pair()
        page = test_client.get(
            "/authorize", params=authorize_params(client_id, challenge), follow_redirects=False
        )

        deny = test_client.post(
            "/authorize",
            data={"request_token": form_token_of(page.text), "action": "deny"},
            follow_redirects=False,
        )

        assert deny.status_code == 302
        params = query_of(deny.headers["location"])
        assert deny.headers["location"].startswith(CLIENT_REDIRECT_URI)
        assert params["error"] == "access_denied"
        assert params["state"] == "client-state-123"
        assert test_client.cookies.get(APPROVAL_COOKIE) is None

    def test_consent_post_without_consent_cookie_is_rejected(self, test_client, client_id):
        _, challenge = pkce_pair()
        page = test_client.get(
            "/authorize", params=authorize_params(client_id, challenge), follow_redirects=False
        )
        test_client.cookies.clear()

        approve = test_client.post(
            "/authorize",
            data={"request_token": form_token_of(page.text), "action": "approve"},
            follow_redirects=False,
        )

        assert approve.status_code == 400
        assert "location" not in approve.headers


class TestScenarioApprovedClient:
    def test_subset_of_approved_scopes_skips_consent(self, test_client, client_id):
        _, challenge = pkce_pair()
        consent_and_approve(test_client, authorize_params(client_id, challenge))

        again = test_client.get(
            "/authorize",
            params=authorize_params(client_id, challenge, scope="read"),
            follow_redirects=False,
        )

        assert again.status_code == 302
        assert again.headers["location"].startswith(UPSTREAM_AUTHORIZE)

    def test_broader_scopes_show_consent_again(self, test_client, client_id):
        _, challenge = pkce_pair()
        consent_and_approve(
            test_client, authorize_params(client_id, challenge, scope="read")
        )

        again = test_client.get(
            "/authorize",
            params=authorize_params(client_id, challenge, scope="read admin"),
            follow_redirects=False,
        )

        assert again.status_code == 200
        assert "request_token" in again.text

    def test_forged_approval_cookie_shows_consent(self, test_client, client_id):
        _, challenge = pkce_pair()
        test_client.cookies.set(APPROVAL_COOKIE, "e30.forged", domain="bridge.example.com")

        page = test_client.get(
            "/authorize", params=authorize_params(client_id, challenge), follow_redirects=False
        )

        assert page.status_code == 200
        assert "request_token" in page.text


class TestScenarioBadState:
    def test_unverifiable_state_renders_error_without_side_effects(
        self, test_client, client_id, user_store, httpx_mock: HTTPXMock
    ):
        response = test_client.get(
            "/callback",
            params={"code": "ABC", "state": "forged.state"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert "location" not in response.headers
        assert "invalid_state" in response.text
        assert httpx_mock.get_requests() == []

        assert anyio.run(user_store.get_user_by_provider_id, 583231) is None

    def test_state_from_another_browser_is_rejected(
        self, test_client, client_id, httpx_mock: HTTPXMock
    ):
        _, challenge = pkce_pair()
        state = consent_and_approve(test_client, authorize_params(client_id, challenge))
        test_client.cookies.delete(FLOW_COOKIE)

        response = test_client.get(
            "/callback", params={"code": "ABC", "state": state}, follow_redirects=False
        )

        assert response.status_code == 400
        assert httpx_mock.get_requests() == []

    def test_upstream_error_param_renders_error(self, test_client):
        response = test_client.get(
            "/callback", params={"error": "access_denied"}, follow_redirects=False
        )

        assert response.status_code == 400
        assert "access_denied" in response.text

    def test_upstream_failure_renders_502(
        self, test_client, client_id, httpx_mock: HTTPXMock
    ):
        _, challenge = pkce_pair()
        state = consent_and_approve(test_client, authorize_params(client_id, challenge))
        httpx_mock.add_response(url=UPSTREAM_TOKEN, method="POST", status_code=500)

        response = test_client.get(
            "/callback", params={"code": "ABC", "state": state}, follow_redirects=False
        )

        assert response.status_code == 502
        assert "location" not in response.headers


class TestRedirectValidation:
    def test_unregistered_redirect_uri_never_redirects(self, test_client, client_id):
        _, challenge = pkce_pair()

        response = test_client.get(
            "/authorize",
            params=authorize_params(
                client_id, challenge, redirect_uri="https://evil.example.com/callback"
            ),
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert "location" not in response.headers
        assert "evil.example.com" not in response.text

    def test_unknown_client_is_rejected(self, test_client):
        _, challenge = pkce_pair()

        response = test_client.get(
            "/authorize",
            params=authorize_params("unknown-client", challenge),
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert "location" not in response.headers

    def test_missing_pkce_is_reported_to_client(self, test_client, client_id):
        params = authorize_params(client_id, "x")
        del params["code_challenge"]

        response = test_client.get("/authorize", params=params, follow_redirects=False)

        assert response.status_code == 302
        error = query_of(response.headers["location"])
        assert error["error"] == "invalid_request"
        assert error["state"] == "client-state-123"


class TestTokenExchange:
    def login(self, test_client, client_id, challenge, httpx_mock) -> str:
        state = consent_and_approve(test_client, authorize_params(client_id, challenge))
        mock_upstream_login(httpx_mock)
        callback = test_client.get(
            "/callback", params={"code": "ABC", "state": state}, follow_redirects=False
        )
        return query_of(callback.headers["location"])["code"]

    def exchange(self, test_client, client_id, code, verifier):
        return test_client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": CLIENT_REDIRECT_URI,
                "client_id": client_id,
                "code_verifier": verifier,
            },
        )

    def test_code_exchanges_once_for_bearer_token(
        self, test_client, client_id, httpx_mock: HTTPXMock
    ):
        verifier, challenge = pkce_pair()
        code = self.login(test_client, client_id, challenge, httpx_mock)

        token = self.exchange(test_client, client_id, code, verifier)
        assert token.status_code == 200, token.text
        body = token.json()
        assert body["token_type"] == "Bearer"
        assert "refresh_token" not in body or body["refresh_token"] is None

        replay = self.exchange(test_client, client_id, code, verifier)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

        me = test_client.get(
            "/api/me", headers={"Authorization": f"Bearer {body['access_token']}"}
        )
        assert me.status_code == 200
        assert me.json()["provider_login"] == "octocat"
        assert "provider_access_token" not in me.json()

    def test_wrong_code_verifier_is_rejected(
        self, test_client, client_id, httpx_mock: HTTPXMock
    ):
        _, challenge = pkce_pair()
        code = self.login(test_client, client_id, challenge, httpx_mock)
        other_verifier, _ = pkce_pair()

        response = self.exchange(test_client, client_id, code, other_verifier)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"


def test_health(test_client):
    assert test_client.get("/health").json()["status"] == "ok"
