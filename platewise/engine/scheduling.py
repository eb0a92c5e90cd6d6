"""Notification schedule computation and per-user schedule mutation."""

import logging
from collections.abc import Mapping
from datetime import datetime

import aiosqlite

from platewise.db.models import DueUser, UserState
from platewise.db.repository import Repository
from platewise.utils.constants import (
    ALLOWED_MINUTES,
    DEFAULT_TIMEZONE,
    NOTIFICATION_DEFAULTS,
    NOTIFICATION_TYPES,
    NotificationPref,
    NotificationType,
)
from platewise.utils.errors import InvalidRequestError
from platewise.utils.time_utils import is_valid_timezone, next_local_occurrence, utcnow

logger = logging.getLogger(__name__)


def merged_prefs(
    stored: Mapping[str, NotificationPref] | None,
) -> dict[NotificationType, NotificationPref]:
    """Overlay stored preferences on the defaults."""
    prefs: dict[NotificationType, NotificationPref] = dict(NOTIFICATION_DEFAULTS)
    if stored:
        for notification_type, pref in stored.items():
            if notification_type in prefs:
                prefs[notification_type] = pref  # type: ignore[index]
    return prefs


def compute_next_notification(
    prefs: Mapping[str, NotificationPref],
    timezone: str,
    now: datetime | None = None,
) -> tuple[datetime | None, list[NotificationType]]:
    """Compute the next notification instant and the types due at it.

    Every enabled preference is converted to its next UTC occurrence. The
    result is the earliest of those and every type landing exactly on it,
    so reminders sharing a clock time are scheduled together.

    Returns:
        (next instant in UTC, types), or (None, []) if nothing is enabled
    """
    if now is None:
        now = utcnow()

    candidates: list[tuple[NotificationType, datetime]] = []
    for notification_type in NOTIFICATION_TYPES:
        pref = prefs.get(notification_type)
        if pref is None or not pref.enabled:
            continue
        candidates.append(
            (notification_type, next_local_occurrence(pref.hour, pref.minute, timezone, now))
        )

    if not candidates:
        return None, []

    earliest = min(at for _, at in candidates)
    types = [t for t, at in candidates if at == earliest]
    return earliest, types


def reschedule(user: UserState, now: datetime) -> None:
    """Recompute a user's next instant and type set in place."""
    next_at, types = compute_next_notification(
        merged_prefs(user.notification_prefs), user.timezone, now
    )
    user.next_notification_utc = next_at
    user.next_notification_types = types


async def get_notification_preferences(
    repo: Repository, user_id: str
) -> dict[NotificationType, NotificationPref]:
    """Get a user's effective preferences (stored over defaults)."""
    user = await repo.get_user(user_id)
    return merged_prefs(user.notification_prefs if user else None)


async def update_preference(
    repo: Repository,
    user_id: str,
    notification_type: NotificationType,
    enabled: bool,
    hour: int | None = None,
    minute: int | None = None,
    timezone: str | None = None,
    now: datetime | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> UserState:
    """Merge one preference and recompute the user's schedule.

    Hour and minute are given together or not at all; when omitted the
    type keeps its current time.

    Raises:
        InvalidRequestError: on an unknown type, a partial or off-grid time,
            or an unknown timezone
    """
    if notification_type not in NOTIFICATION_TYPES:
        raise InvalidRequestError(f"Unknown notification type: {notification_type}")
    if (hour is None) != (minute is None):
        raise InvalidRequestError("hour and minute must be provided together")
    if hour is not None and not 0 <= hour <= 23:
        raise InvalidRequestError("hour must be between 0 and 23")
    if minute is not None and minute not in ALLOWED_MINUTES:
        raise InvalidRequestError(
            f"minute must be one of {', '.join(str(m) for m in ALLOWED_MINUTES)}"
        )
    if timezone is not None and not is_valid_timezone(timezone):
        raise InvalidRequestError(f"Unknown timezone: {timezone}")

    async def apply(conn: aiosqlite.Connection) -> UserState:
        current = now or utcnow()
        user = await repo.get_user(user_id, conn)
        if user is None:
            user = UserState(user_id=user_id, timezone=timezone or default_timezone)
        if timezone is not None:
            user.timezone = timezone

        prefs = merged_prefs(user.notification_prefs)
        existing = prefs[notification_type]
        prefs[notification_type] = NotificationPref(
            enabled=enabled,
            hour=existing.hour if hour is None else hour,
            minute=existing.minute if minute is None else minute,
        )
        user.notification_prefs = prefs
        reschedule(user, current)

        await repo.save_user(user, current, conn)
        return user

    user = await repo.run_in_transaction(apply)
    logger.info(
        f"Updated {notification_type} preference for {user_id} "
        f"(enabled={enabled}); next={user.next_notification_utc} {user.next_notification_types}"
    )
    return user


async def advance_schedule(
    repo: Repository, user_id: str, window_key: str, now: datetime
) -> DueUser | None:
    """Atomically move a due user's schedule past this window.

    Must commit before anything is sent for the user: a crash after this
    point loses the tick's notification instead of repeating it.

    Returns:
        The user with the types that were due, or None if the user is no
        longer due or this window was already processed
    """

    async def apply(conn: aiosqlite.Connection) -> DueUser | None:
        user = await repo.get_user(user_id, conn)
        if (
            user is None
            or user.next_notification_utc is None
            or user.next_notification_utc > now
            or user.last_notification_window == window_key
        ):
            return None

        due_types = list(user.next_notification_types)
        reschedule(user, now)
        user.last_notification_window = window_key

        await repo.save_user(user, now, conn)
        return DueUser(
            user_id=user.user_id,
            timezone=user.timezone,
            notification_types=due_types,
            window_key=window_key,
        )

    return await repo.run_in_transaction(apply)


async def backfill_notification_prefs(
    repo: Repository,
    default_timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Give every user without stored preferences the defaults and a schedule.

    Returns:
        (processed, skipped) counts
    """
    if now is None:
        now = utcnow()

    processed = 0
    skipped = 0

    for candidate in await repo.get_users_without_prefs():

        async def apply(conn: aiosqlite.Connection, user_id: str = candidate.user_id) -> bool:
            user = await repo.get_user(user_id, conn)
            if user is None or user.notification_prefs is not None:
                return False
            if not is_valid_timezone(user.timezone):
                user.timezone = default_timezone
            user.notification_prefs = dict(NOTIFICATION_DEFAULTS)
            reschedule(user, now)
            await repo.save_user(user, now, conn)
            return True

        if await repo.run_in_transaction(apply):
            processed += 1
        else:
            skipped += 1

    logger.info(f"Backfill complete: {processed} processed, {skipped} skipped")
    return processed, skipped
