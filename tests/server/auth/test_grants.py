"""Tests for client registration and grant issuance."""

from unittest.mock import AsyncMock, patch

import pytest
from mcp.shared.auth import OAuthClientInformationFull
from pydantic import AnyUrl

from authbridge.exceptions import InvalidClient, RedirectMismatch
from authbridge.server.auth.grants import (
    ClientRegistry,
    GrantIssuer,
    GrantStore,
    add_query_params,
)
from authbridge.server.auth.models import AuthorizationRequest, Props
from flow_helpers import CLIENT_REDIRECT_URI, query_of


@pytest.fixture
def clients(storage) -> ClientRegistry:
    return ClientRegistry(storage)


@pytest.fixture
def grants(storage) -> GrantStore:
    return GrantStore(storage)


@pytest.fixture
def issuer(clients, grants) -> GrantIssuer:
    return GrantIssuer(clients, grants, code_expiry_seconds=300)


@pytest.fixture
async def client(clients) -> OAuthClientInformationFull:
    client = OAuthClientInformationFull(
        client_id="client-1",
        client_name="Test Client",
        redirect_uris=[AnyUrl(CLIENT_REDIRECT_URI)],
        token_endpoint_auth_method="none",
    )
    await clients.register_client(client)
    return client


@pytest.fixture
def props() -> Props:
    return Props(
        internal_user_id="user-1",
        provider_login="octocat",
        provider_access_token="gho_secret",
        display_name="The Octocat",
    )


def make_request(**overrides) -> AuthorizationRequest:
    values = dict(
        client_id="client-1",
        redirect_uri=CLIENT_REDIRECT_URI,
        scopes=["read"],
        state="client-state",
        code_challenge="challenge",
        code_challenge_method="S256",
    )
    values.update(overrides)
    return AuthorizationRequest(**values)


class TestClientRegistry:
    async def test_registered_client_is_retrievable(self, clients, client):
        stored = await clients.get_client("client-1")

        assert stored is not None
        assert stored.client_name == "Test Client"

    async def test_registration_is_immutable(self, clients, client):
        with pytest.raises(ValueError):
            await clients.register_client(
                client.model_copy(update={"client_name": "Changed"})
            )
        stored = await clients.get_client("client-1")
        assert stored is not None
        assert stored.client_name == "Test Client"

    async def test_unknown_client(self, clients):
        with pytest.raises(InvalidClient):
            await clients.require_client("nope")

    async def test_exact_redirect_uri_matches(self, client):
        assert (
            ClientRegistry.validate_redirect_uri(client, CLIENT_REDIRECT_URI)
            == CLIENT_REDIRECT_URI
        )

    @pytest.mark.parametrize(
        "redirect_uri",
        [
            "https://evil.example.com/callback",
            "https://client.example.com/callback/extra",
            "https://client.example.com/callback?next=evil",
            "http://client.example.com/callback",
            "not a url",
            # equivalent after URL normalization, but not the registered string
            "https://CLIENT.example.com/callback",
            "https://client.example.com:443/callback",
            "https://client.example.com/x/../callback",
        ],
    )
    async def test_other_redirect_uris_mismatch(self, client, redirect_uri):
        with pytest.raises(RedirectMismatch):
            ClientRegistry.validate_redirect_uri(client, redirect_uri)

    async def test_single_registered_uri_is_default(self, client):
        assert ClientRegistry.validate_redirect_uri(client, None) == CLIENT_REDIRECT_URI


class TestGrantIssuer:
    async def test_redirects_with_code_and_original_state(self, issuer, grants, client, props):
        url = await issuer.complete_authorization(make_request(), props)

        assert url.startswith(f"{CLIENT_REDIRECT_URI}?")
        params = query_of(url)
        assert params["state"] == "client-state"

        grant = await grants.get(params["code"])
        assert grant is not None
        assert grant.client_id == "client-1"
        assert grant.props == props
        assert grant.code_challenge == "challenge"

    async def test_codes_are_unique_and_high_entropy(self, issuer, client, props):
        codes = {
            query_of(await issuer.complete_authorization(make_request(), props))["code"]
            for _ in range(20)
        }

        assert len(codes) == 20
        assert all(len(code) >= 43 for code in codes)

    async def test_state_is_omitted_when_client_sent_none(self, issuer, client, props):
        url = await issuer.complete_authorization(make_request(state=None), props)

        assert "state" not in query_of(url)

    async def test_redirect_mismatch_issues_nothing(self, issuer, grants, client, props):
        with patch.object(grants, "put", new_callable=AsyncMock) as put:
            with pytest.raises(RedirectMismatch):
                await issuer.complete_authorization(
                    make_request(redirect_uri="https://evil.example.com/callback"), props
                )

        put.assert_not_awaited()

    async def test_grant_is_single_use(self, issuer, grants, client, props):
        code = query_of(await issuer.complete_authorization(make_request(), props))["code"]

        assert await grants.take(code) is True
        assert await grants.take(code) is False
        assert await grants.get(code) is None


def test_add_query_params_keeps_existing_query():
    url = add_query_params("https://app.example.com/cb?x=1", {"code": "c", "state": None})

    assert url == "https://app.example.com/cb?x=1&code=c"
