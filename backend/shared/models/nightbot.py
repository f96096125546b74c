"""Data models for nightbot_tokens and nightbot_snapshots tables, plus the
command / backup documents exchanged with the Nightbot API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shared.errors import ParseError

# Nightbot user levels; the API rejects anything else.
USER_LEVELS = frozenset(
    {"everyone", "regular", "subscriber", "twitch_vip", "moderator", "admin", "owner"}
)

# Bump when the stored command record changes shape; add an upgrade step
# to load_snapshot_payload() for the previous version.
SNAPSHOT_SCHEMA_VERSION = 1


@dataclass
class NightbotCredential:
    """OAuth token record for one (operator, channel) connection."""

    user_email: str
    channel_name: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    channel_display_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.channel_display_name or self.channel_name


@dataclass
class CommandSnapshot:
    """Snapshot record. ``commands`` is decoded from the stored payload."""

    id: int
    channel_name: str
    snapshot_at: datetime
    command_count: int
    commands: list[NightbotCommand]
    created_by: str
    note: str | None = None
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    last_diff_added: int | None = None
    last_diff_removed: int | None = None
    last_diff_modified: int | None = None
    last_diff_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_diff_cache(self) -> bool:
        return self.last_diff_at is not None


class NightbotCommand(BaseModel):
    """A Nightbot custom command.

    Server-managed fields (``_id``, ``count``, ``createdAt``, ``updatedAt``)
    are only present on commands read from the live API.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str | None = Field(default=None, alias="_id")
    name: str
    message: str
    cool_down: int = Field(default=0, alias="coolDown", ge=0)
    user_level: str = Field(default="everyone", alias="userLevel")
    count: int | None = None
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    @field_validator("user_level")
    @classmethod
    def validate_user_level(cls, v: str) -> str:
        level = v.strip().lower()
        if level not in USER_LEVELS:
            raise ValueError(f"Unknown userLevel: {v}")
        return level

    def stripped(self) -> NightbotCommand:
        """Copy without server-managed fields (for snapshots and exports)."""
        return self.model_copy(
            update={"id": None, "count": None, "created_at": None, "updated_at": None}
        )

    def same_body(self, other: NightbotCommand) -> bool:
        """True when the fields Nightbot lets us write are identical."""
        return (
            self.message == other.message
            and self.cool_down == other.cool_down
            and self.user_level == other.user_level
        )

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class NightbotBackup(BaseModel):
    """Exported backup document (download / upload format)."""

    model_config = ConfigDict(populate_by_name=True)

    exported_at: str = Field(alias="exportedAt")
    channel: str
    command_count: int = Field(alias="commandCount")
    commands: list[NightbotCommand]

    def to_json(self) -> str:
        return json.dumps(
            {
                "exportedAt": self.exported_at,
                "channel": self.channel,
                "commandCount": self.command_count,
                "commands": [cmd.stripped().to_api() for cmd in self.commands],
            },
            indent=2,
            ensure_ascii=False,
        )

    @classmethod
    def parse(cls, raw: str | bytes) -> NightbotBackup:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise ParseError(f"Invalid backup file: {e.error_count()} error(s)") from e


class SnapshotPayload(BaseModel):
    """Versioned on-disk form of a snapshot's command list."""

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    commands: list[NightbotCommand]


def dump_snapshot_payload(commands: list[NightbotCommand]) -> str:
    """Serialize commands verbatim into the current payload version."""
    payload = {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "commands": [cmd.to_api() for cmd in commands],
    }
    return json.dumps(payload, ensure_ascii=False)


def load_snapshot_payload(raw: str) -> list[NightbotCommand]:
    """Decode a stored payload, upgrading older versions.

    Version 0 is the legacy bare JSON array of commands.
    """
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ParseError(f"Snapshot payload is not valid JSON: {e}") from e

    if isinstance(data, list):
        data = {"schema_version": 0, "commands": data}
    if not isinstance(data, dict):
        raise ParseError("Snapshot payload must be an object or an array")

    version = data.get("schema_version")
    if not isinstance(version, int) or version > SNAPSHOT_SCHEMA_VERSION:
        raise ParseError(f"Unsupported snapshot schema_version: {version!r}")

    try:
        payload = SnapshotPayload.model_validate(
            {"schema_version": SNAPSHOT_SCHEMA_VERSION, "commands": data.get("commands")}
        )
    except ValidationError as e:
        raise ParseError(f"Invalid snapshot payload: {e.error_count()} error(s)") from e
    return payload.commands
