"""Shared data models."""

from .nightbot import (
    SNAPSHOT_SCHEMA_VERSION,
    USER_LEVELS,
    CommandSnapshot,
    NightbotBackup,
    NightbotCommand,
    NightbotCredential,
    dump_snapshot_payload,
    load_snapshot_payload,
)

__all__ = [
    "SNAPSHOT_SCHEMA_VERSION",
    "USER_LEVELS",
    "CommandSnapshot",
    "NightbotBackup",
    "NightbotCommand",
    "NightbotCredential",
    "dump_snapshot_payload",
    "load_snapshot_payload",
]
