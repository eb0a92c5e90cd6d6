"""Event ledger - idempotent event writes with derived streak state."""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Any

import aiosqlite

from platewise.db.models import Event, EventName, TrackEventResult, UserState
from platewise.db.repository import Repository
from platewise.schemas import validate_metadata
from platewise.utils.constants import (
    DEFAULT_TIMEZONE,
    METADATA_VERSION,
    ROOT_SCHEMA_VERSION,
    SERVER_SESSION_ID,
)
from platewise.utils.time_utils import is_valid_timezone, local_date, parse_instant, utcnow

logger = logging.getLogger(__name__)

def compute_streak(current_streak: int, last_log_date: date | None, new_log_date: date) -> int:
    """Apply the streak rule for a qualifying log on new_log_date.

    Plain calendar-date difference: a DST shift inside the user's timezone
    does not change which dates are consecutive.
    """
    if last_log_date is None:
        return 1

    diff_days = (new_log_date - last_log_date).days

    if diff_days == 0:
        return current_streak
    elif diff_days == 1:
        return current_streak + 1
    else:
        return 1


def event_local_date(timestamp: datetime, tz: str) -> date:
    """Local calendar date of the event, falling back to UTC for unknown zones."""
    if not is_valid_timezone(tz):
        logger.warning(f"Unknown timezone {tz!r}, using UTC for local date")
        tz = "UTC"
    return local_date(timestamp, tz)


async def track_event(
    repo: Repository,
    *,
    event_id: str,
    event_name: EventName,
    user_id: str,
    timestamp: datetime | str,
    timezone: str,
    session_id: str,
    platform: str,
    metadata: dict[str, Any],
    now: datetime | None = None,
) -> TrackEventResult:
    """Track an event transactionally with idempotency and derived state.

    Inside one transaction:
    1. If the event id exists, return duplicate without writing anything
    2. Read the user's state (absent means zero/null)
    3. For WEIGHT_LOGGED, apply the streak rule and count the log
    4. Write the event and the merged user state

    Raises:
        InvalidRequestError: if metadata fails the kind's schema (before
            any transaction is opened)
    """
    if isinstance(timestamp, str):
        timestamp = parse_instant(timestamp)
    validated = validate_metadata(event_name, metadata)
    stored_metadata = validated.model_dump(mode="json", exclude_none=True)
    log_date = event_local_date(timestamp, timezone)

    async def apply(conn: aiosqlite.Connection) -> TrackEventResult:
        ingested_at = now or utcnow()

        if await repo.event_exists(event_id, conn):
            logger.info(f"Duplicate event detected: {event_id}")
            return TrackEventResult(status="duplicate", event_id=event_id)

        user = await repo.get_user(user_id, conn)
        if user is None:
            user = UserState(user_id=user_id, timezone=DEFAULT_TIMEZONE)

        if event_name == EventName.WEIGHT_LOGGED:
            old_streak = user.current_streak
            user.current_streak = compute_streak(old_streak, user.last_log_date, log_date)
            logger.info(
                f"Streak computed for {user_id}: last={user.last_log_date} "
                f"new={log_date} {old_streak} -> {user.current_streak}"
            )
            user.last_log_date = log_date
            user.total_logs += 1

        if is_valid_timezone(timezone):
            user.timezone = timezone
        user.last_active_at = ingested_at

        await repo.insert_event(
            Event(
                event_id=event_id,
                user_id=user_id,
                event_name=event_name,
                event_timestamp_utc=timestamp,
                event_local_date=log_date,
                ingested_at=ingested_at,
                timezone=timezone,
                session_id=session_id,
                platform=platform,  # type: ignore[arg-type]
                metadata=stored_metadata,
                schema_version=ROOT_SCHEMA_VERSION,
                metadata_version=METADATA_VERSION,
            ),
            conn,
        )
        await repo.save_user(user, ingested_at, conn)

        logger.info(f"Event tracked: {event_id} ({event_name.value}) for {user_id}")
        return TrackEventResult(status="created", event_id=event_id)

    return await repo.run_in_transaction(apply)


def generate_event_id() -> str:
    """Generate a new event id."""
    return str(uuid.uuid4())


async def _track_logged(repo: Repository, **params: Any) -> None:
    try:
        await track_event(repo, **params)
    except Exception as e:
        # Fire-and-forget: never raise into the caller's response path
        logger.error(
            f"Failed to track event {params['event_id']} ({params['event_name']}): {e}",
            exc_info=True,
        )


def track_event_background(
    repo: Repository,
    *,
    event_name: EventName,
    user_id: str,
    timezone: str,
    platform: str,
    metadata: dict[str, Any],
    timestamp: datetime | None = None,
    event_id: str | None = None,
    session_id: str | None = None,
) -> asyncio.Task:
    """Schedule event tracking without waiting for it.

    Failures are logged and swallowed. The task is owned by repo; use
    repo.drain_background_tasks() to flush before shutting down.
    """
    return repo.spawn(
        _track_logged(
            repo,
            event_id=event_id or generate_event_id(),
            event_name=event_name,
            user_id=user_id,
            timestamp=timestamp or utcnow(),
            timezone=timezone,
            session_id=session_id or SERVER_SESSION_ID,
            platform=platform,
            metadata=metadata,
        )
    )
