"""Main entry point for the Platewise notification driver."""

import asyncio
import logging
import sys

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from platewise.config import Config
from platewise.db.migrations import run_migrations
from platewise.db.repository import Repository
from platewise.engine.dispatcher import Dispatcher
from platewise.engine.driver import run_notification_tick
from platewise.engine.push import FcmTransport
from platewise.engine.templates import build_template_table

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, Config.LOG_LEVEL),
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


async def notification_job(repo: Repository, dispatcher: Dispatcher) -> None:
    """Job callback for the driver tick."""
    try:
        await run_notification_tick(repo, dispatcher, Config.NOTIFICATION_WINDOW_MINUTES)
    except Exception as e:
        # The next tick retries; nothing here is retried in place
        logger.error(f"Notification tick failed: {e}", exc_info=True)


async def run() -> None:
    """Initialize resources and run the driver until cancelled."""
    await run_migrations(Config.DATABASE_PATH)

    repo = Repository(Config.DATABASE_PATH, busy_timeout=Config.DB_BUSY_TIMEOUT_SECONDS)
    await repo.connect()

    transport = FcmTransport(
        Config.FCM_PROJECT_ID, Config.FCM_ACCESS_TOKEN, timeout=Config.PUSH_TIMEOUT_SECONDS
    )
    dispatcher = Dispatcher(
        repo,
        transport,
        build_template_table(),
        send_timeout=Config.PUSH_TIMEOUT_SECONDS,
    )

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        notification_job,
        CronTrigger(minute=f"*/{Config.NOTIFICATION_WINDOW_MINUTES}", timezone="UTC"),
        kwargs={"repo": repo, "dispatcher": dispatcher},
        id="notification_driver",
        name="notification driver",
        coalesce=True,
        max_instances=1,
        misfire_grace_time=60,
    )
    scheduler.start()
    logger.info(
        f"Notification driver scheduled (every {Config.NOTIFICATION_WINDOW_MINUTES} minutes)"
    )

    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await repo.drain_background_tasks()
        await transport.aclose()
        await repo.close()
        logger.info("Platewise shut down")


def main() -> None:
    """Start the driver."""
    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info("Starting Platewise notification driver...")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
