"""Notification driver - the periodic tick that finds and notifies due users."""

import logging
from dataclasses import dataclass
from datetime import datetime

from platewise.db.models import DueUser
from platewise.db.repository import Repository
from platewise.engine.dispatcher import Dispatcher
from platewise.engine.scheduling import advance_schedule
from platewise.utils.constants import DEFAULT_WINDOW_MINUTES
from platewise.utils.time_utils import get_window_key, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """What one driver tick did."""

    window_key: str
    due: int = 0
    already_processed: int = 0
    advanced: int = 0
    sent: int = 0
    failed: int = 0


async def run_notification_tick(
    repo: Repository,
    dispatcher: Dispatcher,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
    now: datetime | None = None,
) -> TickSummary:
    """Process one driver tick.

    1. Compute the window key for now
    2. Query users whose next notification is due
    3. Drop users already processed in this window
    4. Advance each remaining user's schedule (committed per user)
    5. Dispatch only the users whose advance committed

    Advancing strictly before dispatch means a crash between the two
    under-delivers for this tick; a retry of the tick never re-sends.
    """
    if now is None:
        now = utcnow()
    window_key = get_window_key(now, window_minutes)
    summary = TickSummary(window_key=window_key)

    due = await repo.get_due_users(now)
    summary.due = len(due)
    if not due:
        logger.info(f"Tick {window_key}: no users due")
        return summary

    pending = [u for u in due if u.last_notification_window != window_key]
    summary.already_processed = len(due) - len(pending)
    if not pending:
        logger.info(f"Tick {window_key}: all due users already processed in this window")
        return summary

    logger.info(f"Tick {window_key}: {len(pending)} users due")

    advanced: list[DueUser] = []
    for user in pending:
        try:
            due_user = await advance_schedule(repo, user.user_id, window_key, now)
        except Exception as e:
            # Not advanced means not dispatched; the next tick retries
            logger.error(f"Failed to advance schedule for {user.user_id}: {e}", exc_info=True)
            continue
        if due_user is not None:
            advanced.append(due_user)

    summary.advanced = len(advanced)
    if not advanced:
        return summary

    result = await dispatcher.dispatch(advanced, now)
    summary.sent = result.sent
    summary.failed = result.failed

    logger.info(
        f"Tick {window_key} complete: {summary.advanced} users, "
        f"{summary.sent}/{summary.sent + summary.failed} deliveries successful"
    )
    return summary
