"""Nightbot snapshot service: capture, diff, restore, export and import.

Read paths (live fetch, snapshot load, diff) propagate errors. Write paths
against Nightbot (restore, import) record per-command failures and carry on.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from api.services.command_diff import DiffResult, diff_commands, index_by_name
from api.services.nightbot_api import NightbotAPIClient
from api.services.nightbot_credential_service import NightbotCredentialService, utc_now
from api.services.reconcile import RestoreResult, reconcile
from shared.errors import NightbotError, SnapshotNotFound
from shared.models.nightbot import CommandSnapshot, NightbotBackup
from shared.repositories.nightbot import NightbotSnapshotRepository

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 14


@dataclass
class SnapshotDiff:
    snapshot: CommandSnapshot
    current_count: int
    result: DiffResult


@dataclass
class ImportResult:
    created: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    def summary(self) -> str:
        msg = f"Imported {self.created} commands, skipped {self.skipped} existing"
        if self.errors:
            msg += f", {self.errors} errors"
        return msg


class NightbotSnapshotService:
    """API-facing snapshot operations for one operator's connected channels."""

    def __init__(
        self,
        snapshot_repo: NightbotSnapshotRepository,
        credentials: NightbotCredentialService,
        nightbot_api: NightbotAPIClient,
        *,
        clock: Callable[[], datetime] = utc_now,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.snapshot_repo = snapshot_repo
        self.credentials = credentials
        self.nightbot_api = nightbot_api
        self.clock = clock
        self.retention_days = retention_days

    # ---- Snapshot store ----

    async def save_snapshot(
        self, user_email: str, channel_name: str, note: str | None = None
    ) -> CommandSnapshot:
        """Capture the channel's live commands (server fields stripped)."""
        token = await self.credentials.get_valid_token(user_email, channel_name)
        commands = await self.nightbot_api.list_commands(token, strip_server_fields=True)

        snapshot_id = await self.snapshot_repo.create_snapshot(
            channel_name, commands, user_email, (note or "").strip() or None
        )
        logger.info(
            f"Snapshot {snapshot_id} saved for {channel_name}: "
            f"{len(commands)} commands by {user_email}"
        )
        return await self.get_snapshot(snapshot_id)

    async def get_snapshot(self, snapshot_id: int) -> CommandSnapshot:
        snapshot = await self.snapshot_repo.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)
        return snapshot

    async def list_snapshots(
        self, channel_name: str, *, include_deleted: bool = False, limit: int = 50
    ) -> list[CommandSnapshot]:
        return await self.snapshot_repo.list_snapshots(
            channel_name, include_deleted=include_deleted, limit=limit
        )

    async def list_trash(self, channel_name: str) -> list[CommandSnapshot]:
        return await self.snapshot_repo.list_deleted_snapshots(channel_name)

    async def soft_delete(self, snapshot_id: int, deleted_by: str) -> CommandSnapshot:
        snapshot = await self.get_snapshot(snapshot_id)
        if await self.snapshot_repo.soft_delete_snapshot(snapshot_id, deleted_by):
            logger.info(f"Snapshot {snapshot_id} ({snapshot.channel_name}) deleted by {deleted_by}")
        return await self.get_snapshot(snapshot_id)

    async def undelete(self, snapshot_id: int) -> CommandSnapshot:
        """Bring a soft-deleted snapshot back from the trash."""
        snapshot = await self.get_snapshot(snapshot_id)
        if await self.snapshot_repo.restore_snapshot(snapshot_id):
            logger.info(f"Snapshot {snapshot_id} ({snapshot.channel_name}) restored from trash")
        return await self.get_snapshot(snapshot_id)

    async def purge_expired(self, retention_days: int | None = None) -> int:
        """Remove snapshots soft-deleted more than *retention_days* ago.

        Defaults to the retention the service was built with.
        """
        if retention_days is None:
            retention_days = self.retention_days
        cutoff = self.clock() - timedelta(days=retention_days)
        purged = await self.snapshot_repo.purge_deleted_before(cutoff)
        logger.info(f"Purged {purged} snapshot(s) deleted before {cutoff:%Y-%m-%d %H:%M}")
        return purged

    # ---- Diff / restore ----

    async def diff_snapshot(self, user_email: str, snapshot_id: int) -> SnapshotDiff:
        """Diff a snapshot against live commands and cache the counts."""
        snapshot = await self.get_snapshot(snapshot_id)
        token = await self.credentials.get_valid_token(user_email, snapshot.channel_name)
        current = await self.nightbot_api.list_commands(token, strip_server_fields=True)

        result = diff_commands(index_by_name(snapshot.commands), index_by_name(current))

        counts = result.counts
        try:
            await self.snapshot_repo.update_diff_cache(
                snapshot.id, counts.added, counts.removed, counts.modified, self.clock()
            )
        except Exception as e:
            logger.warning(f"Failed to update diff cache for snapshot {snapshot.id}: {e}")

        return SnapshotDiff(snapshot=snapshot, current_count=len(current), result=result)

    async def restore_snapshot(self, user_email: str, snapshot_id: int) -> RestoreResult:
        """Make the channel's live commands match the snapshot."""
        snapshot = await self.get_snapshot(snapshot_id)
        token = await self.credentials.get_valid_token(user_email, snapshot.channel_name)
        live = await self.nightbot_api.list_commands(token)

        result = await reconcile(
            self.nightbot_api,
            token,
            index_by_name(snapshot.commands),
            index_by_name(live),
        )
        logger.info(
            f"Snapshot {snapshot_id} restored to {snapshot.channel_name} by {user_email}: "
            f"created={result.created} updated={result.updated} "
            f"deleted={result.deleted} errors={result.errors}"
        )
        return result

    # ---- Backup documents ----

    async def export_backup(self, user_email: str, channel_name: str) -> NightbotBackup:
        """Live commands of a channel as a backup document."""
        token = await self.credentials.get_valid_token(user_email, channel_name)
        commands = await self.nightbot_api.list_commands(token, strip_server_fields=True)

        display_name = channel_name
        try:
            channel = await self.nightbot_api.get_channel(token)
            display_name = channel.display_name or channel_name
        except NightbotError as e:
            logger.warning(f"Get channel for export failed: {e}")

        return NightbotBackup(
            exported_at=self.clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
            channel=display_name,
            command_count=len(commands),
            commands=commands,
        )

    async def snapshot_backup(self, snapshot_id: int) -> NightbotBackup:
        """A stored snapshot in backup-document form."""
        snapshot = await self.get_snapshot(snapshot_id)
        return NightbotBackup(
            exported_at=snapshot.snapshot_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            channel=snapshot.channel_name,
            command_count=len(snapshot.commands),
            commands=snapshot.commands,
        )

    async def import_backup(
        self, user_email: str, channel_name: str, backup: NightbotBackup
    ) -> ImportResult:
        """Create backup commands missing from the channel (case-insensitive)."""
        token = await self.credentials.get_valid_token(user_email, channel_name)
        existing = await self.nightbot_api.list_commands(token)
        existing_names = {cmd.name.lower() for cmd in existing}

        result = ImportResult()
        for cmd in backup.commands:
            if cmd.name.lower() in existing_names:
                result.skipped += 1
                continue
            try:
                await self.nightbot_api.create_command(token, cmd)
            except NightbotError as e:
                logger.warning(f"Import of command {cmd.name} failed: {e}")
                result.errors += 1
                result.error_messages.append(f"{cmd.name}: {e}")
                continue
            existing_names.add(cmd.name.lower())
            result.created += 1

        logger.info(f"Backup imported to {channel_name} by {user_email}: {result.summary()}")
        return result
