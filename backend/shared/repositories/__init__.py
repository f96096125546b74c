"""Shared repository layer."""

from .nightbot import NightbotSnapshotRepository, NightbotTokenRepository

__all__ = [
    "NightbotSnapshotRepository",
    "NightbotTokenRepository",
]
