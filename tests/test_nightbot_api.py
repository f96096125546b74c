from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from api.services.nightbot_api import NightbotAPIClient
from conftest import make_command
from shared.errors import RemoteAPIError

COMMANDS_BODY = {
    "_total": 2,
    "status": 200,
    "commands": [
        {
            "_id": "56739ad9a4ff0c8e6c8d4f6f",
            "name": "!discord",
            "message": "Join us at https://discord.gg/example",
            "coolDown": 30,
            "userLevel": "everyone",
            "count": 12,
            "createdAt": "2024-01-01T00:00:00.000Z",
            "updatedAt": "2024-02-01T00:00:00.000Z",
        },
        {
            "_id": "56739ad9a4ff0c8e6c8d4f70",
            "name": "!so",
            "message": "Go follow $(touser)",
            "coolDown": 5,
            "userLevel": "moderator",
            "count": 3,
            "createdAt": "2024-01-02T00:00:00.000Z",
            "updatedAt": "2024-01-02T00:00:00.000Z",
        },
    ],
}


def _client(handler) -> NightbotAPIClient:
    return NightbotAPIClient(
        "client-id",
        "client-secret",
        "http://localhost:8000/api/nightbot/callback",
        transport=httpx.MockTransport(handler),
    )


def test_list_commands_keeps_server_fields_by_default() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=COMMANDS_BODY)

    commands = asyncio.run(_client(handler).list_commands("tok"))

    assert [c.name for c in commands] == ["!discord", "!so"]
    assert commands[0].id == "56739ad9a4ff0c8e6c8d4f6f"
    assert commands[0].count == 12
    assert commands[1].user_level == "moderator"
    assert seen[0].url == "https://api.nightbot.tv/1/commands"
    assert seen[0].headers["Authorization"] == "Bearer tok"


def test_list_commands_can_strip_server_fields() -> None:
    client = _client(lambda request: httpx.Response(200, json=COMMANDS_BODY))

    commands = asyncio.run(client.list_commands("tok", strip_server_fields=True))

    assert commands[0].to_api() == {
        "name": "!discord",
        "message": "Join us at https://discord.gg/example",
        "coolDown": 30,
        "userLevel": "everyone",
    }


def test_non_2xx_raises_remote_api_error() -> None:
    client = _client(lambda request: httpx.Response(401, text='{"message":"Unauthorized"}'))

    with pytest.raises(RemoteAPIError) as exc_info:
        asyncio.run(client.list_commands("tok"))

    assert exc_info.value.status == 401
    assert "Unauthorized" in exc_info.value.body


def test_transport_failure_has_status_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteAPIError) as exc_info:
        asyncio.run(_client(handler).delete_command("tok", "abc"))

    assert exc_info.value.status == 0


def test_create_command_posts_form_fields() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": 200})

    cmd = make_command("!hi", "Hello $(user)", cool_down=10, user_level="regular")
    asyncio.run(_client(handler).create_command("tok", cmd))

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/1/commands"
    assert parse_qs(request.content.decode()) == {
        "name": ["!hi"],
        "message": ["Hello $(user)"],
        "coolDown": ["10"],
        "userLevel": ["regular"],
    }


def test_update_command_puts_without_name() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": 200})

    asyncio.run(_client(handler).update_command("tok", "abc123", make_command("!hi", "yo")))

    request = seen[0]
    assert request.method == "PUT"
    assert request.url.path == "/1/commands/abc123"
    assert "name" not in parse_qs(request.content.decode())


def test_get_channel_parses_channel_object() -> None:
    body = {
        "channel": {
            "_id": "c1",
            "name": "somechannel",
            "displayName": "SomeChannel",
            "provider": "twitch",
        }
    }
    channel = asyncio.run(
        _client(lambda request: httpx.Response(200, json=body)).get_channel("tok")
    )

    assert (channel.name, channel.display_name, channel.provider) == (
        "somechannel",
        "SomeChannel",
        "twitch",
    )


def test_non_json_command_listing_raises_remote_api_error() -> None:
    client = _client(lambda request: httpx.Response(200, text="oops"))

    with pytest.raises(RemoteAPIError) as exc_info:
        asyncio.run(client.list_commands("tok"))

    assert exc_info.value.status == 200
    assert exc_info.value.body == "oops"


def test_command_listing_that_is_not_a_list_raises_remote_api_error() -> None:
    client = _client(lambda request: httpx.Response(200, json={"commands": "none"}))

    with pytest.raises(RemoteAPIError):
        asyncio.run(client.list_commands("tok"))


@pytest.mark.parametrize("body", [[], ["channel"], {"channel": "somechannel"}])
def test_unexpected_channel_body_raises_remote_api_error(body) -> None:
    client = _client(lambda request: httpx.Response(200, json=body))

    with pytest.raises(RemoteAPIError) as exc_info:
        asyncio.run(client.get_channel("tok"))

    assert exc_info.value.operation == "get channel"


def test_refresh_access_token_posts_refresh_grant() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"access_token": "new-a", "refresh_token": "new-r", "expires_in": 2592000},
        )

    result = asyncio.run(_client(handler).refresh_access_token("old-r"))

    assert result.success
    assert (result.access_token, result.refresh_token, result.expires_in) == (
        "new-a",
        "new-r",
        2592000,
    )
    form = parse_qs(seen[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["old-r"]
    assert form["client_secret"] == ["client-secret"]


def test_refresh_failure_is_reported_not_raised() -> None:
    client = _client(lambda request: httpx.Response(400, text="invalid_grant"))

    result = asyncio.run(client.refresh_access_token("old-r"))

    assert not result.success
    assert "invalid_grant" in result.error


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["access_token"]),
        httpx.Response(200, json={"access_token": "new-a", "expires_in": "soon"}),
    ],
)
def test_unreadable_token_body_is_reported_not_raised(response) -> None:
    result = asyncio.run(_client(lambda request: response).refresh_access_token("old-r"))

    assert not result.success
    assert result.error == "invalid token response"


def test_oauth_url_requests_command_and_channel_scopes() -> None:
    url = _client(lambda request: httpx.Response(200)).generate_oauth_url(state="xyz")

    query = parse_qs(urlparse(url).query)
    assert query["scope"] == ["commands channel"]
    assert query["state"] == ["xyz"]
    assert query["redirect_uri"] == ["http://localhost:8000/api/nightbot/callback"]
