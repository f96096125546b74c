"""Drive a channel's live Nightbot commands to match a snapshot.

Nightbot has no batch/transaction endpoint, so every corrective call is
issued on its own: a failure is recorded and the remaining commands are
still processed. Nothing is rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from api.services.command_diff import DiffStatus, diff_commands
from shared.errors import NightbotError
from shared.models.nightbot import NightbotCommand

logger = logging.getLogger(__name__)

_APPLY_ORDER = {DiffStatus.ADDED: 0, DiffStatus.MODIFIED: 1, DiffStatus.REMOVED: 2}


class CommandWriter(Protocol):
    async def create_command(self, access_token: str, cmd: NightbotCommand) -> None: ...

    async def update_command(
        self, access_token: str, remote_id: str, cmd: NightbotCommand
    ) -> None: ...

    async def delete_command(self, access_token: str, remote_id: str) -> None: ...


@dataclass
class RestoreResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    def summary(self) -> str:
        msg = (
            f"Restored snapshot: {self.created} created, "
            f"{self.updated} updated, {self.deleted} deleted"
        )
        if self.errors:
            msg += f", {self.errors} errors"
        return msg


async def reconcile(
    writer: CommandWriter,
    access_token: str,
    target: Mapping[str, NightbotCommand],
    live: Mapping[str, NightbotCommand],
) -> RestoreResult:
    """Apply *target* (snapshot commands by name) onto *live*.

    *live* must carry remote ids (unstripped list). Nightbot caps the number
    of commands per channel, so deletes run first, then updates, then
    creates, each in name order.
    """
    result = RestoreResult()
    plan = diff_commands(target, live)

    for entry in sorted(plan.diffs, key=lambda d: (_APPLY_ORDER[d.status], d.name)):
        name = entry.name
        try:
            if entry.status == DiffStatus.ADDED:
                await writer.delete_command(access_token, _remote_id(live[name]))
                result.deleted += 1
            elif entry.status == DiffStatus.MODIFIED:
                await writer.update_command(access_token, _remote_id(live[name]), target[name])
                result.updated += 1
            elif entry.status == DiffStatus.REMOVED:
                await writer.create_command(access_token, target[name])
                result.created += 1
        except NightbotError as e:
            logger.warning(f"{entry.status.value} command {name} during restore failed: {e}")
            result.errors += 1
            result.error_messages.append(f"{name}: {e}")

    return result


def _remote_id(cmd: NightbotCommand) -> str:
    if not cmd.id:
        raise MissingRemoteId(cmd.name)
    return cmd.id


class MissingRemoteId(NightbotError):
    """A live command came back without its ``_id``; it cannot be addressed."""

    def __init__(self, name: str) -> None:
        super().__init__(f"live command {name} has no remote id")
