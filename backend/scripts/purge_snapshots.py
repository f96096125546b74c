"""Permanently remove snapshots that sat in the trash past the retention window.

Meant for cron; the API server never purges on its own.

Usage:
    python purge_snapshots.py              # snapshot_retention_days from api settings
    python purge_snapshots.py --days 30
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from api.core.config import get_settings
from shared.database import DatabaseManager, PoolConfig
from shared.repositories.nightbot import NightbotSnapshotRepository

load_dotenv(Path(__file__).resolve().parent.parent / "api" / ".env")

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger("purge_snapshots")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (default: SNAPSHOT_RETENTION_DAYS setting)",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"ERROR: invalid settings. Check api/.env or environment variables.\n{e}")
        sys.exit(1)

    days = settings.snapshot_retention_days if args.days is None else args.days
    if days < 1:
        print("ERROR: --days must be at least 1")
        sys.exit(1)

    db = DatabaseManager(settings.database_url, PoolConfig.for_service("maintenance"))
    await db.connect()
    try:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        purged = await NightbotSnapshotRepository(db.pool).purge_deleted_before(cutoff)
        logger.info(f"Purged {purged} snapshot(s) deleted before {cutoff:%Y-%m-%d %H:%M} UTC")
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
