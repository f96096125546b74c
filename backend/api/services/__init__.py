"""Services layer - Business logic

This module provides service classes for handling business logic.
Services are initialized with their dependencies and accessed through dependency injection.
"""

from .auth_service import AuthService
from .command_diff import CommandDiff, DiffCounts, DiffResult, DiffStatus, diff_commands
from .nightbot_api import NightbotAPIClient, NightbotChannelInfo, TokenRefreshResult
from .nightbot_credential_service import NightbotCredentialService
from .nightbot_snapshot_service import ImportResult, NightbotSnapshotService, SnapshotDiff
from .reconcile import RestoreResult, reconcile

__all__ = [
    "AuthService",
    "CommandDiff",
    "DiffCounts",
    "DiffResult",
    "DiffStatus",
    "ImportResult",
    "NightbotAPIClient",
    "NightbotChannelInfo",
    "NightbotCredentialService",
    "NightbotSnapshotService",
    "RestoreResult",
    "SnapshotDiff",
    "TokenRefreshResult",
    "diff_commands",
    "reconcile",
]
