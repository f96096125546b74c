"""In-memory stand-ins for the Nightbot API and the Postgres repositories."""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import UTC, datetime

import pytest

from api.core.config import get_settings
from api.services.nightbot_api import NightbotChannelInfo, TokenRefreshResult
from shared.errors import RemoteAPIError
from shared.models.nightbot import CommandSnapshot, NightbotCommand, NightbotCredential

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
JWT_SECRET = "test-secret-with-enough-length-for-hs256"
ADMIN_EMAIL = "ops@example.com"


def make_command(
    name: str,
    message: str,
    cool_down: int = 5,
    user_level: str = "everyone",
    remote_id: str | None = None,
) -> NightbotCommand:
    return NightbotCommand(
        _id=remote_id,
        name=name,
        message=message,
        coolDown=cool_down,
        userLevel=user_level,
    )


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeNightbotAPI:
    """Holds one channel's live commands and records every write."""

    def __init__(self, commands: list[NightbotCommand] | None = None) -> None:
        self._ids = itertools.count(1)
        self.live: dict[str, NightbotCommand] = {}
        for cmd in commands or []:
            self._store(cmd)
        self.calls: list[tuple[str, str]] = []
        self.fail_names: set[str] = set()
        self.refresh_results: list[TokenRefreshResult] = []
        self.refresh_calls: list[str] = []
        self.exchange_result = TokenRefreshResult(
            success=True, access_token="oauth-access", refresh_token="oauth-refresh", expires_in=3600
        )
        self.channel = NightbotChannelInfo(
            id="c1", name="somechannel", display_name="SomeChannel", provider="twitch"
        )

    def _store(self, cmd: NightbotCommand) -> NightbotCommand:
        remote_id = cmd.id or f"id-{next(self._ids)}"
        stored = cmd.model_copy(update={"id": remote_id, "count": 0})
        self.live[remote_id] = stored
        return stored

    def _check(self, name: str) -> None:
        if name in self.fail_names:
            raise RemoteAPIError(500, "boom", f"write {name}")

    async def list_commands(self, access_token, *, strip_server_fields=False):
        commands = sorted(self.live.values(), key=lambda c: c.name)
        if strip_server_fields:
            commands = [c.stripped() for c in commands]
        return commands

    async def create_command(self, access_token, cmd):
        self.calls.append(("create", cmd.name))
        self._check(cmd.name)
        self._store(cmd.stripped())

    async def update_command(self, access_token, remote_id, cmd):
        self.calls.append(("update", cmd.name))
        self._check(cmd.name)
        self.live[remote_id] = self.live[remote_id].model_copy(
            update={
                "message": cmd.message,
                "cool_down": cmd.cool_down,
                "user_level": cmd.user_level,
            }
        )

    async def delete_command(self, access_token, remote_id):
        name = self.live[remote_id].name
        self.calls.append(("delete", name))
        self._check(name)
        del self.live[remote_id]

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_results:
            return self.refresh_results.pop(0)
        return TokenRefreshResult(
            success=True, access_token="fresh-access", refresh_token="fresh-refresh", expires_in=3600
        )

    async def exchange_code_for_token(self, code):
        return self.exchange_result

    async def get_channel(self, access_token):
        return self.channel


class FakeTokenRepository:
    """Dict-backed NightbotTokenRepository with the same CAS semantics."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], NightbotCredential] = {}
        self.swap_calls = 0

    def seed(self, credential: NightbotCredential) -> None:
        self.rows[(credential.user_email, credential.channel_name)] = credential

    async def get_token(self, user_email, channel_name):
        return self.rows.get((user_email, channel_name))

    async def get_token_uncached(self, user_email, channel_name):
        return self.rows.get((user_email, channel_name))

    async def list_tokens_by_user(self, user_email):
        return sorted(
            (c for (email, _), c in self.rows.items() if email == user_email),
            key=lambda c: c.channel_name,
        )

    async def upsert_token(
        self,
        user_email,
        channel_name,
        access_token,
        refresh_token,
        expires_at,
        channel_display_name=None,
    ):
        self.rows[(user_email, channel_name)] = NightbotCredential(
            user_email=user_email,
            channel_name=channel_name,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            channel_display_name=channel_display_name,
        )

    async def swap_refreshed_token(
        self, user_email, channel_name, previous_expires_at, access_token, refresh_token, expires_at
    ):
        self.swap_calls += 1
        current = self.rows.get((user_email, channel_name))
        if current is None or current.expires_at != previous_expires_at:
            return False
        self.rows[(user_email, channel_name)] = replace(
            current, access_token=access_token, refresh_token=refresh_token, expires_at=expires_at
        )
        return True

    async def delete_token(self, user_email, channel_name):
        return self.rows.pop((user_email, channel_name), None) is not None


class FakeSnapshotRepository:
    def __init__(self) -> None:
        self.rows: dict[int, CommandSnapshot] = {}
        self._ids = itertools.count(1)
        self.diff_cache_writes: list[tuple[int, int, int, int]] = []
        self.fail_diff_cache = False

    async def create_snapshot(self, channel_name, commands, created_by, note=None):
        snapshot_id = next(self._ids)
        self.rows[snapshot_id] = CommandSnapshot(
            id=snapshot_id,
            channel_name=channel_name,
            snapshot_at=NOW,
            command_count=len(commands),
            commands=list(commands),
            created_by=created_by,
            note=note,
        )
        return snapshot_id

    async def get_snapshot(self, snapshot_id):
        return self.rows.get(snapshot_id)

    async def list_snapshots(self, channel_name, *, include_deleted=False, limit=50):
        rows = [
            s
            for s in self.rows.values()
            if s.channel_name == channel_name and (include_deleted or not s.is_deleted)
        ]
        return sorted(rows, key=lambda s: (s.snapshot_at, s.id), reverse=True)[:limit]

    async def list_deleted_snapshots(self, channel_name, limit=50):
        rows = [s for s in self.rows.values() if s.channel_name == channel_name and s.is_deleted]
        return sorted(rows, key=lambda s: s.deleted_at, reverse=True)[:limit]

    async def soft_delete_snapshot(self, snapshot_id, deleted_by, deleted_at=None):
        snapshot = self.rows.get(snapshot_id)
        if snapshot is None or snapshot.is_deleted:
            return False
        self.rows[snapshot_id] = replace(
            snapshot, deleted_at=deleted_at or NOW, deleted_by=deleted_by
        )
        return True

    async def restore_snapshot(self, snapshot_id):
        snapshot = self.rows.get(snapshot_id)
        if snapshot is None or not snapshot.is_deleted:
            return False
        self.rows[snapshot_id] = replace(snapshot, deleted_at=None, deleted_by=None)
        return True

    async def purge_deleted_before(self, cutoff):
        doomed = [
            sid for sid, s in self.rows.items() if s.deleted_at is not None and s.deleted_at < cutoff
        ]
        for sid in doomed:
            del self.rows[sid]
        return len(doomed)

    async def update_diff_cache(self, snapshot_id, added, removed, modified, diffed_at=None):
        if self.fail_diff_cache:
            raise ConnectionError("db down")
        self.diff_cache_writes.append((snapshot_id, added, removed, modified))
        self.rows[snapshot_id] = replace(
            self.rows[snapshot_id],
            last_diff_added=added,
            last_diff_removed=removed,
            last_diff_modified=modified,
            last_diff_at=diffed_at,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_repo() -> FakeTokenRepository:
    return FakeTokenRepository()


@pytest.fixture
def snapshot_repo() -> FakeSnapshotRepository:
    return FakeSnapshotRepository()


@pytest.fixture
def settings_env(monkeypatch):
    """Minimal environment for api.core.config.Settings."""
    monkeypatch.setenv("NIGHTBOT_CLIENT_ID", "client-id")
    monkeypatch.setenv("NIGHTBOT_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("JWT_SECRET_KEY", JWT_SECRET)
    monkeypatch.setenv("ADMIN_EMAILS", ADMIN_EMAIL)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/unused")
    monkeypatch.setenv("FRONTEND_URL", "http://frontend.test")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
