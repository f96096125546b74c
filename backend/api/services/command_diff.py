"""Structural diff between two Nightbot command sets.

Pure functions: no I/O, no clock. Output order depends only on the inputs,
never on dict iteration order.
"""

from __future__ import annotations

import difflib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from shared.models.nightbot import NightbotCommand

DIFF_CONTEXT_LINES = 3


class DiffStatus(str, Enum):
    REMOVED = "removed"
    MODIFIED = "modified"
    ADDED = "added"
    UNCHANGED = "unchanged"


# Display order of the detailed list
_STATUS_ORDER = {DiffStatus.REMOVED: 0, DiffStatus.MODIFIED: 1, DiffStatus.ADDED: 2}


@dataclass
class CommandDiff:
    """One changed command. ``old``/``new`` are None for added/removed."""

    name: str
    status: DiffStatus
    unified_diff: str
    old: NightbotCommand | None = None
    new: NightbotCommand | None = None


@dataclass
class DiffCounts:
    added: int = 0
    removed: int = 0
    modified: int = 0
    unchanged: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


@dataclass
class DiffResult:
    diffs: list[CommandDiff] = field(default_factory=list)
    counts: DiffCounts = field(default_factory=DiffCounts)

    def names(self, status: DiffStatus) -> list[str]:
        return [d.name for d in self.diffs if d.status == status]


def index_by_name(commands: Iterable[NightbotCommand]) -> dict[str, NightbotCommand]:
    """Map command name -> command. A later duplicate name wins."""
    return {cmd.name: cmd for cmd in commands}


def format_command_body(cmd: NightbotCommand) -> str:
    """Text form of the writable fields, one per line, for line diffs."""
    return f"message: {cmd.message}\ncooldown: {cmd.cool_down}\nuserlevel: {cmd.user_level}"


def unified_diff(old_text: str, new_text: str, from_file: str, to_file: str) -> str:
    """git-style unified diff with 3 lines of context; empty text has no lines."""
    old_lines = [line + "\n" for line in old_text.splitlines()]
    new_lines = [line + "\n" for line in new_text.splitlines()]
    return "".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=from_file,
            tofile=to_file,
            n=DIFF_CONTEXT_LINES,
        )
    )


def diff_commands(
    snapshot_set: Mapping[str, NightbotCommand],
    current_set: Mapping[str, NightbotCommand],
) -> DiffResult:
    """Classify every command name of both sets.

    removed:   in snapshot_set only
    modified:  in both, message / cooldown / user level differ
    added:     in current_set only
    unchanged: counted, not listed
    """
    result = DiffResult()
    counts = result.counts

    for name in sorted(snapshot_set):
        snap_cmd = snapshot_set[name]
        cur_cmd = current_set.get(name)
        if cur_cmd is None:
            result.diffs.append(
                CommandDiff(
                    name=name,
                    status=DiffStatus.REMOVED,
                    unified_diff=unified_diff(
                        format_command_body(snap_cmd), "", f"snapshot/{name}", "/dev/null"
                    ),
                    old=snap_cmd,
                )
            )
            counts.removed += 1
        elif not snap_cmd.same_body(cur_cmd):
            result.diffs.append(
                CommandDiff(
                    name=name,
                    status=DiffStatus.MODIFIED,
                    unified_diff=unified_diff(
                        format_command_body(snap_cmd),
                        format_command_body(cur_cmd),
                        f"snapshot/{name}",
                        f"current/{name}",
                    ),
                    old=snap_cmd,
                    new=cur_cmd,
                )
            )
            counts.modified += 1
        else:
            counts.unchanged += 1

    for name in sorted(current_set):
        if name in snapshot_set:
            continue
        cur_cmd = current_set[name]
        result.diffs.append(
            CommandDiff(
                name=name,
                status=DiffStatus.ADDED,
                unified_diff=unified_diff(
                    "", format_command_body(cur_cmd), "/dev/null", f"current/{name}"
                ),
                new=cur_cmd,
            )
        )
        counts.added += 1

    result.diffs.sort(key=lambda d: (_STATUS_ORDER[d.status], d.name))
    return result
