"""Repository for nightbot_tokens and nightbot_snapshots tables."""

from __future__ import annotations

import logging
from datetime import datetime

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.models.nightbot import (
    CommandSnapshot,
    NightbotCommand,
    NightbotCredential,
    dump_snapshot_payload,
    load_snapshot_payload,
)

logger = logging.getLogger(__name__)

# Short TTL: refresh decisions read expires_at from here.
_credential_cache = AsyncTTLCache(maxsize=64, ttl=60)

_TOKEN_COLUMNS = (
    "user_email, channel_name, channel_display_name, access_token, refresh_token, "
    "expires_at, created_at, updated_at"
)

_SNAPSHOT_COLUMNS = (
    "id, channel_name, snapshot_at, command_count, schema_version, commands_json, "
    "created_by, note, deleted_at, deleted_by, "
    "last_diff_added, last_diff_removed, last_diff_modified, last_diff_at"
)

# Hard ceiling on a single listing page.
MAX_SNAPSHOT_LIST_LIMIT = 100


def _credential_key(user_email: str, channel_name: str) -> str:
    return f"nightbot_token:{user_email}:{channel_name}"


def _row_to_snapshot(row: asyncpg.Record) -> CommandSnapshot:
    data = dict(row)
    raw = data.pop("commands_json")
    return CommandSnapshot(commands=load_snapshot_payload(raw), **data)


class NightbotTokenRepository:
    """Pure SQL operations for nightbot_tokens."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @cached(
        cache=_credential_cache,
        key_func=lambda self, user_email, channel_name: _credential_key(
            user_email, channel_name
        ),
    )
    async def get_token(self, user_email: str, channel_name: str) -> NightbotCredential | None:
        """Get the stored credential for an operator's channel."""
        return await self.get_token_uncached(user_email, channel_name)

    async def get_token_uncached(
        self, user_email: str, channel_name: str
    ) -> NightbotCredential | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TOKEN_COLUMNS} FROM nightbot_tokens "
                "WHERE user_email = $1 AND channel_name = $2",
                user_email,
                channel_name,
            )
            if not row:
                return None
            return NightbotCredential(**dict(row))

    async def list_tokens_by_user(self, user_email: str) -> list[NightbotCredential]:
        """Return every channel connection of an operator."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_TOKEN_COLUMNS} FROM nightbot_tokens "
                "WHERE user_email = $1 ORDER BY channel_name",
                user_email,
            )
            return [NightbotCredential(**dict(r)) for r in rows]

    async def upsert_token(
        self,
        user_email: str,
        channel_name: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        channel_display_name: str | None = None,
    ) -> None:
        """Insert or overwrite a credential (last write wins)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO nightbot_tokens
                    (user_email, channel_name, channel_display_name,
                     access_token, refresh_token, expires_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_email, channel_name) DO UPDATE SET
                    channel_display_name = EXCLUDED.channel_display_name,
                    access_token         = EXCLUDED.access_token,
                    refresh_token        = EXCLUDED.refresh_token,
                    expires_at           = EXCLUDED.expires_at,
                    updated_at           = NOW()
                """,
                user_email,
                channel_name,
                channel_display_name,
                access_token,
                refresh_token,
                expires_at,
            )
        _credential_cache.invalidate(_credential_key(user_email, channel_name))

    async def swap_refreshed_token(
        self,
        user_email: str,
        channel_name: str,
        previous_expires_at: datetime,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> bool:
        """Store refreshed tokens only if nobody refreshed since we read the row.

        Returns False when the row's expires_at no longer matches
        *previous_expires_at* (a concurrent refresh won).
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE nightbot_tokens SET
                    access_token  = $4,
                    refresh_token = $5,
                    expires_at    = $6,
                    updated_at    = NOW()
                WHERE user_email = $1 AND channel_name = $2 AND expires_at = $3
                """,
                user_email,
                channel_name,
                previous_expires_at,
                access_token,
                refresh_token,
                expires_at,
            )
        _credential_cache.invalidate(_credential_key(user_email, channel_name))
        return result == "UPDATE 1"

    async def delete_token(self, user_email: str, channel_name: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM nightbot_tokens WHERE user_email = $1 AND channel_name = $2",
                user_email,
                channel_name,
            )
        _credential_cache.invalidate(_credential_key(user_email, channel_name))
        return result == "DELETE 1"


class NightbotSnapshotRepository:
    """Pure SQL operations for nightbot_snapshots."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create_snapshot(
        self,
        channel_name: str,
        commands: list[NightbotCommand],
        created_by: str,
        note: str | None = None,
    ) -> int:
        """Store *commands* verbatim and return the new snapshot id."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO nightbot_snapshots
                    (channel_name, command_count, commands_json, created_by, note)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                channel_name,
                len(commands),
                dump_snapshot_payload(commands),
                created_by,
                note or None,
            )

    async def get_snapshot(self, snapshot_id: int) -> CommandSnapshot | None:
        """Get a snapshot by id, whether active or soft-deleted."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM nightbot_snapshots WHERE id = $1",
                snapshot_id,
            )
            if not row:
                return None
            return _row_to_snapshot(row)

    async def list_snapshots(
        self,
        channel_name: str,
        *,
        include_deleted: bool = False,
        limit: int = 50,
    ) -> list[CommandSnapshot]:
        """Newest first. Soft-deleted rows only when *include_deleted*."""
        limit = max(1, min(limit, MAX_SNAPSHOT_LIST_LIMIT))
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM nightbot_snapshots
                WHERE channel_name = $1 AND ($2 OR deleted_at IS NULL)
                ORDER BY snapshot_at DESC, id DESC
                LIMIT $3
                """,
                channel_name,
                include_deleted,
                limit,
            )
            return [_row_to_snapshot(r) for r in rows]

    async def list_deleted_snapshots(
        self, channel_name: str, limit: int = 50
    ) -> list[CommandSnapshot]:
        """Trash view: soft-deleted snapshots, most recently deleted first."""
        limit = max(1, min(limit, MAX_SNAPSHOT_LIST_LIMIT))
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM nightbot_snapshots
                WHERE channel_name = $1 AND deleted_at IS NOT NULL
                ORDER BY deleted_at DESC, id DESC
                LIMIT $2
                """,
                channel_name,
                limit,
            )
            return [_row_to_snapshot(r) for r in rows]

    async def soft_delete_snapshot(
        self, snapshot_id: int, deleted_by: str, deleted_at: datetime | None = None
    ) -> bool:
        """Mark an active snapshot deleted. False if missing or already deleted."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE nightbot_snapshots
                SET deleted_at = COALESCE($3, NOW()), deleted_by = $2
                WHERE id = $1 AND deleted_at IS NULL
                """,
                snapshot_id,
                deleted_by,
                deleted_at,
            )
            return result == "UPDATE 1"

    async def restore_snapshot(self, snapshot_id: int) -> bool:
        """Clear the soft-delete markers. False if missing or not deleted."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE nightbot_snapshots
                SET deleted_at = NULL, deleted_by = NULL
                WHERE id = $1 AND deleted_at IS NOT NULL
                """,
                snapshot_id,
            )
            return result == "UPDATE 1"

    async def purge_deleted_before(self, cutoff: datetime) -> int:
        """Permanently remove snapshots soft-deleted before *cutoff*."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM nightbot_snapshots "
                "WHERE deleted_at IS NOT NULL AND deleted_at < $1",
                cutoff,
            )
        # asyncpg status string: "DELETE <n>"
        return int(result.split()[-1])

    async def update_diff_cache(
        self,
        snapshot_id: int,
        added: int,
        removed: int,
        modified: int,
        diffed_at: datetime | None = None,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE nightbot_snapshots SET
                    last_diff_added    = $2,
                    last_diff_removed  = $3,
                    last_diff_modified = $4,
                    last_diff_at       = COALESCE($5, NOW())
                WHERE id = $1
                """,
                snapshot_id,
                added,
                removed,
                modified,
                diffed_at,
            )
