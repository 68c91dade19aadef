"""Tests for the MCP tool endpoint."""

import base64
import json

import anyio
import pytest
from pytest_httpx import HTTPXMock
from starlette.testclient import TestClient

from authbridge.server.app import create_app
from flow_helpers import BRIDGE_URL, bearer_for

IMAGE_URL = "https://images.example.com/run/flux-1-schnell"
MCP_HEADERS = {"Accept": "application/json, text/event-stream"}


@pytest.fixture
def app(settings, user_store):
    return create_app(settings, user_store=user_store)


@pytest.fixture
def test_client(app):
    with TestClient(app, base_url=BRIDGE_URL) as client:
        yield client


def rpc(client, headers, method, params=None):
    response = client.post(
        "/mcp",
        headers={**MCP_HEADERS, **headers},
        json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params or {}},
    )
    assert response.status_code == 200, response.text
    return response.json()["result"]


def call_tool(client, headers, name, arguments=None):
    return rpc(client, headers, "tools/call", {"name": name, "arguments": arguments or {}})


def text_of(result) -> str:
    return result["content"][0]["text"]


def test_missing_token_is_401(test_client):
    response = test_client.post(
        "/mcp",
        headers=MCP_HEADERS,
        json={"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}},
    )

    assert response.status_code == 401
    assert response.headers["www-authenticate"].startswith("Bearer ")


def test_lists_tools(app, test_client, user):
    result = rpc(
        test_client, bearer_for(app, internal_user_id=user.internal_id), "tools/list"
    )

    names = {tool["name"] for tool in result["tools"]}
    assert names == {
        "userInfo",
        "add",
        "userInfoOctokit",
        "userGet",
        "userUpdateInfo",
        "generateImage",
    }


class TestUserTools:
    def test_user_info_hides_upstream_token(self, app, test_client, user):
        result = call_tool(
            test_client, bearer_for(app, internal_user_id=user.internal_id), "userInfo"
        )

        assert not result.get("isError")
        info = json.loads(text_of(result))
        assert info["internal_user_id"] == user.internal_id
        assert "provider_access_token" not in info

    def test_user_get(self, app, test_client, user):
        result = call_tool(
            test_client, bearer_for(app, internal_user_id=user.internal_id), "userGet"
        )

        assert json.loads(text_of(result))["provider_id"] == 583231

    def test_user_update_info(self, app, test_client, user, user_store):
        result = call_tool(
            test_client,
            bearer_for(app, internal_user_id=user.internal_id),
            "userUpdateInfo",
            {"name": "Mona", "email": "mona@example.com"},
        )

        assert not result.get("isError")
        stored = anyio.run(user_store.get_user, user.internal_id)
        assert stored.display_name == "Mona"
        assert stored.email == "mona@example.com"

    def test_user_update_info_rejects_invalid_email(self, app, test_client, user):
        result = call_tool(
            test_client,
            bearer_for(app, internal_user_id=user.internal_id),
            "userUpdateInfo",
            {"email": "not-an-email"},
        )

        assert result["isError"] is True
        assert "email" in text_of(result)

    def test_user_info_octokit(self, app, test_client, user, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            url="https://api.github.com/user",
            json={"id": 583231, "login": "octocat"},
        )

        result = call_tool(
            test_client,
            bearer_for(app, internal_user_id=user.internal_id),
            "userInfoOctokit",
        )

        assert json.loads(text_of(result))["login_name"] == "octocat"
        assert httpx_mock.get_request().headers["authorization"] == "Bearer gho_upstream"


class TestAdd:
    def test_adds(self, app, test_client, user):
        result = call_tool(
            test_client,
            bearer_for(app, internal_user_id=user.internal_id),
            "add",
            {"a": 1, "b": 2.5},
        )

        assert json.loads(text_of(result)) == {"result": 3.5}

    def test_overflow_is_a_tool_error(self, app, test_client, user):
        result = call_tool(
            test_client,
            bearer_for(app, internal_user_id=user.internal_id),
            "add",
            {"a": 1e308, "b": 1e308},
        )

        assert result["isError"] is True
        assert "finite" in text_of(result)


class TestGenerateImage:
    @pytest.fixture
    def image_client(self, settings, user_store):
        settings.image_api_url = IMAGE_URL
        settings.image_api_token = "cf-token"
        app = create_app(settings, user_store=user_store)
        with TestClient(app, base_url=BRIDGE_URL) as client:
            yield app, client

    def test_other_login_is_refused(self, image_client, user, httpx_mock: HTTPXMock):
        app, client = image_client

        result = call_tool(
            client,
            bearer_for(app, internal_user_id=user.internal_id, login="mona"),
            "generateImage",
            {"prompt": "a dragon"},
        )

        assert result["isError"] is True
        assert "not enabled" in text_of(result)
        assert httpx_mock.get_requests() == []

    def test_privileged_login_gets_image_content(
        self, image_client, user, httpx_mock: HTTPXMock
    ):
        app, client = image_client
        encoded = base64.b64encode(b"jpeg-bytes").decode()
        httpx_mock.add_response(
            url=IMAGE_URL, method="POST", json={"result": {"image": encoded}}
        )

        result = call_tool(
            client,
            bearer_for(app, internal_user_id=user.internal_id),
            "generateImage",
            {"prompt": "a dragon", "steps": 8},
        )

        assert not result.get("isError")
        content = result["content"][0]
        assert content["type"] == "image"
        assert content["data"] == encoded
        assert content["mimeType"] == "image/jpeg"
