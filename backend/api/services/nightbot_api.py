"""Nightbot API client service.

All calls use a user access token obtained through the Nightbot OAuth flow
(stored per operator/channel in nightbot_tokens, refreshed by
NightbotCredentialService). Every method is a single round trip; non-2xx
responses raise RemoteAPIError carrying status and body.
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from shared.errors import RemoteAPIError
from shared.models.nightbot import NightbotCommand

logger = logging.getLogger(__name__)

NIGHTBOT_AUTHORIZE_URL = "https://api.nightbot.tv/oauth2/authorize"
NIGHTBOT_TOKEN_URL = "https://api.nightbot.tv/oauth2/token"
NIGHTBOT_API_BASE = "https://api.nightbot.tv/1"


@dataclass
class TokenRefreshResult:
    """Result of a code exchange or token refresh."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int = 0
    error: str | None = None


@dataclass
class NightbotChannelInfo:
    id: str
    name: str
    display_name: str
    provider: str = ""


class NightbotAPIClient:
    """Client for the Nightbot REST API.

    Shares one httpx client for connection reuse. Pass *transport* to stub
    the network (tests use httpx.MockTransport).
    """

    SCOPES = ["commands", "channel"]

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        api_base: str = NIGHTBOT_API_BASE,
        token_url: str = NIGHTBOT_TOKEN_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_base = api_base.rstrip("/")
        self.token_url = token_url

        self._http = httpx.AsyncClient(timeout=10.0, transport=transport)

    async def close(self) -> None:
        """Close the shared HTTP client. Call on app shutdown."""
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _auth_headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        operation: str,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated API request; raise RemoteAPIError unless 2xx."""
        try:
            response = await self._http.request(
                method,
                f"{self.api_base}/{path}",
                data=data,
                headers=self._auth_headers(access_token),
            )
        except httpx.TimeoutException:
            logger.error(f"Timeout during Nightbot {operation}")
            raise RemoteAPIError(0, "timeout", operation) from None
        except httpx.HTTPError as e:
            logger.error(f"Nightbot {operation} transport error: {e}")
            raise RemoteAPIError(0, str(e), operation) from e

        if not response.is_success:
            raise RemoteAPIError(response.status_code, response.text, operation)
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        """Decode a 2xx body that must be a JSON object."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise RemoteAPIError(response.status_code, response.text, operation)
        return body

    @staticmethod
    def _command_form(cmd: NightbotCommand, *, include_name: bool) -> dict[str, str]:
        form = {
            "message": cmd.message,
            "coolDown": str(cmd.cool_down),
            "userLevel": cmd.user_level,
        }
        if include_name:
            form = {"name": cmd.name, **form}
        return form

    # ------------------------------------------------------------------
    # OAuth flow
    # ------------------------------------------------------------------

    def generate_oauth_url(self, state: str | None = None) -> str:
        """Generate the Nightbot OAuth authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.SCOPES),
        }
        if state:
            params["state"] = state
        return f"{NIGHTBOT_AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, form: dict[str, str], what: str) -> TokenRefreshResult:
        try:
            response = await self._http.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    **form,
                },
            )
        except httpx.TimeoutException:
            logger.error(f"Timeout during Nightbot {what}")
            return TokenRefreshResult(success=False, error="timeout")
        except httpx.HTTPError as e:
            logger.error(f"Nightbot {what} transport error: {e}")
            return TokenRefreshResult(success=False, error=str(e))

        if response.status_code != 200:
            logger.error(f"Nightbot {what} failed: {response.status_code}")
            return TokenRefreshResult(
                success=False, error=f"{response.status_code} - {response.text}"
            )

        try:
            data = response.json()
            access_token = data.get("access_token")
            refresh_token = data.get("refresh_token") or form.get("refresh_token", "")
            expires_in = int(data.get("expires_in") or 0)
        except (ValueError, TypeError, AttributeError):
            logger.error(f"Nightbot {what} returned an unreadable body")
            return TokenRefreshResult(success=False, error="invalid token response")

        if not access_token:
            return TokenRefreshResult(success=False, error=f"No access_token in {what} response")

        return TokenRefreshResult(
            success=True,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
        )

    async def exchange_code_for_token(self, code: str) -> TokenRefreshResult:
        """Exchange an OAuth authorization code for tokens."""
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
            "code exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        """Refresh an access token. Nightbot rotates the refresh token too."""
        result = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token refresh",
        )
        if result.success:
            logger.debug("Successfully refreshed Nightbot access token")
        return result

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    async def get_channel(self, access_token: str) -> NightbotChannelInfo:
        """Resolve a token to the Nightbot channel it manages."""
        response = await self._request("GET", "channel", access_token, operation="get channel")
        channel = self._json(response, "get channel").get("channel") or {}
        if not isinstance(channel, dict):
            raise RemoteAPIError(response.status_code, response.text, "get channel")
        return NightbotChannelInfo(
            id=channel.get("_id", ""),
            name=channel.get("name", ""),
            display_name=channel.get("displayName", ""),
            provider=channel.get("provider", ""),
        )

    # ------------------------------------------------------------------
    # Custom commands
    # ------------------------------------------------------------------

    async def list_commands(
        self, access_token: str, *, strip_server_fields: bool = False
    ) -> list[NightbotCommand]:
        """Fetch all custom commands of the token's channel.

        With *strip_server_fields* the remote id, count and timestamps are
        dropped (snapshot/export form); restore needs them kept.
        """
        response = await self._request("GET", "commands", access_token, operation="get commands")
        items = self._json(response, "get commands").get("commands", [])
        if not isinstance(items, list):
            raise RemoteAPIError(response.status_code, response.text, "get commands")
        try:
            commands = [NightbotCommand.model_validate(item) for item in items]
        except ValidationError as e:
            raise RemoteAPIError(
                response.status_code, f"unexpected command payload: {e}", "get commands"
            ) from e

        if strip_server_fields:
            commands = [cmd.stripped() for cmd in commands]
        return commands

    async def create_command(self, access_token: str, cmd: NightbotCommand) -> None:
        await self._request(
            "POST",
            "commands",
            access_token,
            operation=f"create command {cmd.name}",
            data=self._command_form(cmd, include_name=True),
        )

    async def update_command(
        self, access_token: str, remote_id: str, cmd: NightbotCommand
    ) -> None:
        await self._request(
            "PUT",
            f"commands/{remote_id}",
            access_token,
            operation=f"update command {cmd.name}",
            data=self._command_form(cmd, include_name=False),
        )

    async def delete_command(self, access_token: str, remote_id: str) -> None:
        await self._request(
            "DELETE", f"commands/{remote_id}", access_token, operation="delete command"
        )
