"""Backfill default notification preferences for existing users.

Gives every user without stored preferences the defaults and computes
their next notification. Run before enabling the driver on an existing
database:

    python -m platewise.scripts.backfill_notification_prefs
"""

import asyncio
import logging
import sys

from platewise.config import Config
from platewise.db.migrations import run_migrations
from platewise.db.repository import Repository
from platewise.engine.scheduling import backfill_notification_prefs

logger = logging.getLogger(__name__)


async def run() -> None:
    await run_migrations(Config.DATABASE_PATH)
    repo = Repository(Config.DATABASE_PATH, busy_timeout=Config.DB_BUSY_TIMEOUT_SECONDS)
    await repo.connect()
    try:
        processed, skipped = await backfill_notification_prefs(repo, Config.DEFAULT_TIMEZONE)
    finally:
        await repo.close()
    print(f"Processed: {processed} users")
    print(f"Skipped (already had prefs): {skipped} users")


if __name__ == "__main__":
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, Config.LOG_LEVEL),
        stream=sys.stdout,
    )
    Config.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
    asyncio.run(run())
