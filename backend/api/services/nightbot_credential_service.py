"""Nightbot credential service: OAuth connections and transparent refresh."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from api.services.nightbot_api import NightbotAPIClient
from shared.errors import RemoteAPIError, TokenMissing, TokenRefreshFailed
from shared.models.nightbot import NightbotCredential
from shared.repositories.nightbot import NightbotTokenRepository

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


def utc_now() -> datetime:
    return datetime.now(UTC)


class NightbotCredentialService:
    """Stores Nightbot tokens per (operator, channel) and hands out valid ones.

    Refresh is serialized per (operator, channel) with an asyncio.Lock, and
    the database write is a compare-and-swap on the expiry we read, so two
    processes refreshing at once cannot overwrite each other silently.
    Keep one instance per process so the locks are shared.
    """

    def __init__(
        self,
        token_repo: NightbotTokenRepository,
        nightbot_api: NightbotAPIClient,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.token_repo = token_repo
        self.nightbot_api = nightbot_api
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._refresh_locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, user_email: str, channel_name: str) -> asyncio.Lock:
        key = (user_email, channel_name)
        if key not in self._refresh_locks:
            self._refresh_locks[key] = asyncio.Lock()
        return self._refresh_locks[key]

    def _needs_refresh(self, credential: NightbotCredential) -> bool:
        return credential.expires_at <= self.clock() + self.refresh_margin

    # ---- Token access ----

    async def get_valid_token(self, user_email: str, channel_name: str) -> str:
        """Return a usable access token, refreshing it when about to expire.

        Raises TokenMissing when the channel is not connected and
        TokenRefreshFailed when Nightbot rejects the refresh.
        """
        credential = await self.token_repo.get_token(user_email, channel_name)
        if credential is None:
            raise TokenMissing(user_email, channel_name)
        if not self._needs_refresh(credential):
            return credential.access_token

        async with self._lock_for(user_email, channel_name):
            # Another request may have refreshed while we waited
            credential = await self.token_repo.get_token_uncached(user_email, channel_name)
            if credential is None:
                raise TokenMissing(user_email, channel_name)
            if not self._needs_refresh(credential):
                return credential.access_token
            return await self._refresh(credential)

    async def _refresh(self, credential: NightbotCredential) -> str:
        channel_name = credential.channel_name
        result = await self.nightbot_api.refresh_access_token(credential.refresh_token)
        if not result.success or not result.access_token:
            logger.warning(f"Nightbot token refresh failed for {channel_name}: {result.error}")
            raise TokenRefreshFailed(channel_name, result.error or "unknown error")

        expires_at = self.clock() + timedelta(seconds=result.expires_in)
        swapped = await self.token_repo.swap_refreshed_token(
            credential.user_email,
            channel_name,
            credential.expires_at,
            result.access_token,
            result.refresh_token or credential.refresh_token,
            expires_at,
        )
        if swapped:
            logger.info(f"Refreshed Nightbot token for {channel_name} (expires {expires_at:%Y-%m-%d %H:%M})")
            return result.access_token

        # Lost the race: keep whatever the winning writer stored
        logger.warning(f"Concurrent Nightbot token refresh for {channel_name}, using stored token")
        stored = await self.token_repo.get_token_uncached(credential.user_email, channel_name)
        if stored is None:
            raise TokenMissing(credential.user_email, channel_name)
        return stored.access_token

    # ---- Connections ----

    async def list_channels(self, user_email: str) -> list[NightbotCredential]:
        return await self.token_repo.list_tokens_by_user(user_email)

    async def upsert(
        self,
        user_email: str,
        channel_name: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        channel_display_name: str | None = None,
    ) -> None:
        await self.token_repo.upsert_token(
            user_email,
            channel_name,
            access_token,
            refresh_token,
            expires_at,
            channel_display_name,
        )

    async def connect_with_code(self, user_email: str, code: str) -> NightbotCredential:
        """OAuth callback: exchange *code*, resolve the channel, store tokens."""
        result = await self.nightbot_api.exchange_code_for_token(code)
        if not result.success or not result.access_token:
            raise RemoteAPIError(0, result.error or "token exchange failed", "token exchange")

        return await self._store_connection(
            user_email,
            result.access_token,
            result.refresh_token or "",
            self.clock() + timedelta(seconds=result.expires_in),
        )

    async def connect_manual(
        self,
        user_email: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
    ) -> NightbotCredential:
        """Store a pasted token after checking it against the channel endpoint."""
        return await self._store_connection(
            user_email,
            access_token.strip(),
            refresh_token.strip(),
            self.clock() + timedelta(seconds=expires_in),
        )

    async def _store_connection(
        self,
        user_email: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> NightbotCredential:
        channel = await self.nightbot_api.get_channel(access_token)
        if not channel.name:
            raise RemoteAPIError(200, "channel info has no name", "get channel")

        logger.info(f"Nightbot channel connected: {channel.name} ({channel.provider}) by {user_email}")
        credential = NightbotCredential(
            user_email=user_email,
            channel_name=channel.name,
            channel_display_name=channel.display_name or None,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        await self.upsert(
            credential.user_email,
            credential.channel_name,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.channel_display_name,
        )
        return credential

    async def delete(self, user_email: str, channel_name: str) -> bool:
        """Disconnect a channel."""
        deleted = await self.token_repo.delete_token(user_email, channel_name)
        if deleted:
            logger.info(f"Nightbot channel disconnected: {channel_name} by {user_email}")
        return deleted
