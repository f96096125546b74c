from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from api.services.nightbot_api import NightbotAPIClient, TokenRefreshResult
from api.services.nightbot_credential_service import NightbotCredentialService
from conftest import NOW, FakeNightbotAPI
from shared.errors import RemoteAPIError, TokenMissing, TokenRefreshFailed
from shared.models.nightbot import NightbotCredential

USER = "ops@example.com"
CHANNEL = "somechannel"


def _credential(expires_in: timedelta) -> NightbotCredential:
    return NightbotCredential(
        user_email=USER,
        channel_name=CHANNEL,
        access_token="old-access",
        refresh_token="old-refresh",
        expires_at=NOW + expires_in,
    )


def _service(token_repo, clock, api=None):
    return NightbotCredentialService(token_repo, api or FakeNightbotAPI(), clock=clock)


def test_token_far_from_expiry_is_not_refreshed(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(hours=2)))
    api = FakeNightbotAPI()

    token = asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert token == "old-access"
    assert api.refresh_calls == []


def test_token_within_margin_is_refreshed_once(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=4)))
    api = FakeNightbotAPI()

    token = asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert token == "fresh-access"
    assert api.refresh_calls == ["old-refresh"]
    stored = token_repo.rows[(USER, CHANNEL)]
    assert stored.access_token == "fresh-access"
    assert stored.refresh_token == "fresh-refresh"
    assert stored.expires_at == NOW + timedelta(seconds=3600)


def test_refreshed_expiry_gates_the_next_call(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(seconds=-30)))
    api = FakeNightbotAPI()
    service = _service(token_repo, clock, api)

    async def twice():
        await service.get_valid_token(USER, CHANNEL)
        return await service.get_valid_token(USER, CHANNEL)

    assert asyncio.run(twice()) == "fresh-access"
    assert len(api.refresh_calls) == 1


def test_concurrent_callers_share_one_refresh(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=1)))
    api = FakeNightbotAPI()
    service = _service(token_repo, clock, api)

    async def many():
        return await asyncio.gather(*(service.get_valid_token(USER, CHANNEL) for _ in range(5)))

    tokens = asyncio.run(many())

    assert tokens == ["fresh-access"] * 5
    assert len(api.refresh_calls) == 1
    assert token_repo.swap_calls == 1


def test_missing_credential_raises(token_repo, clock) -> None:
    with pytest.raises(TokenMissing) as exc_info:
        asyncio.run(_service(token_repo, clock).get_valid_token(USER, CHANNEL))
    assert exc_info.value.channel_name == CHANNEL


def test_rejected_refresh_raises_and_keeps_stored_token(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=1)))
    api = FakeNightbotAPI()
    api.refresh_results = [TokenRefreshResult(success=False, error="400 - invalid_grant")]

    with pytest.raises(TokenRefreshFailed) as exc_info:
        asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert "invalid_grant" in exc_info.value.reason
    assert token_repo.rows[(USER, CHANNEL)].access_token == "old-access"


def test_unreadable_refresh_body_raises_token_refresh_failed(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=1)))
    api = NightbotAPIClient(
        "id",
        "secret",
        "http://x/cb",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>gateway</html>")
        ),
    )

    with pytest.raises(TokenRefreshFailed) as exc_info:
        asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert exc_info.value.reason == "invalid token response"
    assert token_repo.rows[(USER, CHANNEL)].access_token == "old-access"


def test_lost_swap_returns_winning_token(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=1)))
    api = FakeNightbotAPI()
    original_swap = token_repo.swap_refreshed_token

    async def racing_swap(user_email, channel_name, previous_expires_at, *args):
        # Another process stores its refresh first
        await token_repo.upsert_token(
            user_email, channel_name, "winner-access", "winner-refresh", NOW + timedelta(hours=1)
        )
        return await original_swap(user_email, channel_name, previous_expires_at, *args)

    token_repo.swap_refreshed_token = racing_swap

    token = asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert token == "winner-access"
    assert token_repo.rows[(USER, CHANNEL)].refresh_token == "winner-refresh"


def test_refresh_without_new_refresh_token_keeps_the_old_one(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(minutes=1)))
    api = FakeNightbotAPI()
    api.refresh_results = [
        TokenRefreshResult(success=True, access_token="a2", refresh_token=None, expires_in=60)
    ]

    asyncio.run(_service(token_repo, clock, api).get_valid_token(USER, CHANNEL))

    assert token_repo.rows[(USER, CHANNEL)].refresh_token == "old-refresh"


def test_connect_with_code_stores_resolved_channel(token_repo, clock) -> None:
    api = FakeNightbotAPI()

    credential = asyncio.run(_service(token_repo, clock, api).connect_with_code(USER, "code"))

    assert credential.channel_name == "somechannel"
    assert credential.display_name == "SomeChannel"
    stored = token_repo.rows[(USER, "somechannel")]
    assert stored.access_token == "oauth-access"
    assert stored.expires_at == NOW + timedelta(seconds=3600)


def test_connect_with_failed_exchange_raises(token_repo, clock) -> None:
    api = FakeNightbotAPI()
    api.exchange_result = TokenRefreshResult(success=False, error="401 - bad code")

    with pytest.raises(RemoteAPIError):
        asyncio.run(_service(token_repo, clock, api).connect_with_code(USER, "code"))
    assert token_repo.rows == {}


def test_connect_manual_strips_pasted_tokens(token_repo, clock) -> None:
    service = _service(token_repo, clock)

    asyncio.run(service.connect_manual(USER, "  access \n", " refresh ", 120))

    stored = token_repo.rows[(USER, "somechannel")]
    assert (stored.access_token, stored.refresh_token) == ("access", "refresh")


def test_list_and_delete_channels(token_repo, clock) -> None:
    token_repo.seed(_credential(timedelta(hours=1)))
    service = _service(token_repo, clock)

    assert [c.channel_name for c in asyncio.run(service.list_channels(USER))] == [CHANNEL]
    assert asyncio.run(service.delete(USER, CHANNEL)) is True
    assert asyncio.run(service.delete(USER, CHANNEL)) is False
