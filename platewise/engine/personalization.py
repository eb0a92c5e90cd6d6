"""Personalization context for notification copy."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

import aiosqlite

from platewise.db.repository import Repository
from platewise.utils.constants import CONTEXT_BATCH_SIZE, DEFAULT_DISPLAY_NAME, DEFAULT_TIMEZONE
from platewise.utils.time_utils import is_valid_timezone, time_of_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersonalizationContext:
    """Values substituted into templates."""

    display_name: str
    time_of_day: str
    timezone: str


def fallback_context(timezone: str, now: datetime) -> PersonalizationContext:
    """Context used when nothing is known about the user."""
    if not is_valid_timezone(timezone):
        timezone = DEFAULT_TIMEZONE
    return PersonalizationContext(DEFAULT_DISPLAY_NAME, time_of_day(now, timezone), timezone)


async def resolve_context(
    repo: Repository, user_id: str, timezone: str, now: datetime
) -> PersonalizationContext:
    """Look up a user's context. Always returns one; failures fall back."""
    try:
        user = await repo.get_user(user_id)
    except aiosqlite.Error as e:
        logger.warning(f"Context lookup failed for {user_id}, using fallback: {e}")
        return fallback_context(timezone, now)

    if user is None:
        return fallback_context(timezone, now)

    tz = user.timezone if is_valid_timezone(user.timezone) else DEFAULT_TIMEZONE
    return PersonalizationContext(
        display_name=(user.display_name or "").strip() or DEFAULT_DISPLAY_NAME,
        time_of_day=time_of_day(now, tz),
        timezone=tz,
    )


async def resolve_context_batch(
    repo: Repository,
    users: list[tuple[str, str]],
    now: datetime,
    batch_size: int = CONTEXT_BATCH_SIZE,
) -> dict[str, PersonalizationContext]:
    """Resolve contexts for (user_id, timezone) pairs, batch_size at a time."""
    contexts: dict[str, PersonalizationContext] = {}
    for i in range(0, len(users), batch_size):
        batch = users[i:i + batch_size]
        results = await asyncio.gather(
            *(resolve_context(repo, user_id, tz, now) for user_id, tz in batch)
        )
        for (user_id, _), context in zip(batch, results):
            contexts[user_id] = context
    return contexts
