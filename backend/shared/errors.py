"""Error taxonomy for the Nightbot snapshot / restore feature.

Read paths (listing live commands, loading a snapshot, diffing) let these
propagate to the caller. Restore write paths catch them per command.
"""

from __future__ import annotations


class NightbotError(Exception):
    """Base class for all Nightbot feature errors."""


class AuthRequired(NightbotError):
    """No authenticated operator identity on the request."""


class AuthorizationDenied(NightbotError):
    """The operator is not allowed to manage this channel or credential."""


class TokenMissing(NightbotError):
    """No stored credential for the (user, channel) pair."""

    def __init__(self, user_email: str, channel_name: str) -> None:
        super().__init__(f"No Nightbot token found for channel {channel_name}")
        self.user_email = user_email
        self.channel_name = channel_name


class TokenRefreshFailed(NightbotError):
    """Refreshing the access token failed; the operator has to reconnect."""

    def __init__(self, channel_name: str, reason: str) -> None:
        super().__init__(f"Token refresh failed for {channel_name}: {reason}")
        self.channel_name = channel_name
        self.reason = reason


class RemoteAPIError(NightbotError):
    """Non-2xx (or transport) failure from the Nightbot API.

    ``status`` is 0 when no HTTP response was received.
    """

    def __init__(self, status: int, body: str, operation: str = "") -> None:
        prefix = f"{operation} failed" if operation else "Nightbot API error"
        super().__init__(f"{prefix}: {status} - {body}")
        self.status = status
        self.body = body
        self.operation = operation


class SnapshotNotFound(NightbotError):
    def __init__(self, snapshot_id: int) -> None:
        super().__init__(f"Snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class ParseError(NightbotError):
    """Malformed snapshot payload or backup upload."""
