"""Tests for notification scheduling."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from platewise.db.models import UserState
from platewise.engine.scheduling import (
    advance_schedule,
    backfill_notification_prefs,
    compute_next_notification,
    get_notification_preferences,
    merged_prefs,
    update_preference,
)
from platewise.utils.constants import NOTIFICATION_DEFAULTS, NotificationPref
from platewise.utils.errors import InvalidRequestError

UTC = ZoneInfo("UTC")


def test_earliest_enabled_type_wins():
    """At 06:00 UTC the weight reminder (07:30) is next."""
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    next_at, types = compute_next_notification(NOTIFICATION_DEFAULTS, "UTC", now)

    assert next_at == datetime(2026, 3, 1, 7, 30, tzinfo=UTC)
    assert types == ["weight"]


def test_ties_schedule_together():
    prefs = dict(NOTIFICATION_DEFAULTS)
    prefs["breakfast"] = NotificationPref(True, 7, 30)
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)

    next_at, types = compute_next_notification(prefs, "UTC", now)

    assert next_at == datetime(2026, 3, 1, 7, 30, tzinfo=UTC)
    assert types == ["weight", "breakfast"]


def test_disabled_types_are_skipped():
    prefs = dict(NOTIFICATION_DEFAULTS)
    prefs["weight"] = NotificationPref(False, 7, 30)
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)

    next_at, types = compute_next_notification(prefs, "UTC", now)

    assert next_at == datetime(2026, 3, 1, 8, 30, tzinfo=UTC)
    assert types == ["breakfast"]


def test_nothing_enabled():
    prefs = {t: NotificationPref(False, p.hour, p.minute) for t, p in NOTIFICATION_DEFAULTS.items()}
    assert compute_next_notification(prefs, "UTC") == (None, [])


def test_wraps_to_tomorrow_after_last_type():
    """After dinner the next reminder is tomorrow's weight."""
    now = datetime(2026, 3, 1, 21, 0, tzinfo=UTC)
    next_at, types = compute_next_notification(NOTIFICATION_DEFAULTS, "UTC", now)

    assert next_at == datetime(2026, 3, 2, 7, 30, tzinfo=UTC)
    assert types == ["weight"]


def test_local_times_convert_to_utc():
    """07:30 in Kolkata is 02:00 UTC."""
    now = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)
    next_at, types = compute_next_notification(NOTIFICATION_DEFAULTS, "Asia/Kolkata", now)

    assert next_at == datetime(2026, 3, 1, 2, 0, tzinfo=UTC)
    assert types == ["weight"]


def test_merged_prefs_overlay_defaults():
    stored = {"lunch": NotificationPref(False, 12, 0)}
    prefs = merged_prefs(stored)

    assert prefs["lunch"] == NotificationPref(False, 12, 0)
    assert prefs["dinner"] == NOTIFICATION_DEFAULTS["dinner"]
    assert merged_prefs(None) == dict(NOTIFICATION_DEFAULTS)


@pytest.mark.asyncio
async def test_update_preference_creates_user_and_schedule(repo):
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    user = await update_preference(repo, "u1", "weight", True, hour=6, minute=30, now=now)

    assert user.next_notification_utc == datetime(2026, 3, 1, 6, 30, tzinfo=UTC)
    assert user.next_notification_types == ["weight"]

    stored = await repo.get_user("u1")
    assert stored.notification_prefs["weight"] == NotificationPref(True, 6, 30)
    assert stored.next_notification_utc == user.next_notification_utc


@pytest.mark.asyncio
async def test_update_preference_keeps_time_when_omitted(repo):
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    await update_preference(repo, "u1", "lunch", True, hour=12, minute=40, now=now)
    await update_preference(repo, "u1", "lunch", False, now=now)

    prefs = await get_notification_preferences(repo, "u1")
    assert prefs["lunch"] == NotificationPref(False, 12, 40)


@pytest.mark.asyncio
async def test_update_preference_changes_timezone(repo):
    now = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)
    user = await update_preference(
        repo, "u1", "weight", True, hour=7, minute=30, timezone="Asia/Kolkata", now=now
    )

    assert user.timezone == "Asia/Kolkata"
    assert user.next_notification_utc == datetime(2026, 3, 1, 2, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_disabling_everything_clears_schedule(repo):
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    for notification_type in NOTIFICATION_DEFAULTS:
        user = await update_preference(repo, "u1", notification_type, False, now=now)

    assert user.next_notification_utc is None
    assert user.next_notification_types == []
    assert await repo.get_due_users(now + timedelta(days=2)) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"hour": 7},
        {"minute": 30},
        {"hour": 7, "minute": 15},
        {"hour": 24, "minute": 0},
        {"hour": 7, "minute": 30, "timezone": "Nowhere/City"},
    ],
)
async def test_update_preference_rejects_bad_input(repo, kwargs):
    with pytest.raises(InvalidRequestError):
        await update_preference(repo, "u1", "weight", True, **kwargs)

    assert await repo.get_user("u1") is None


@pytest.mark.asyncio
async def test_update_preference_rejects_unknown_type(repo):
    with pytest.raises(InvalidRequestError):
        await update_preference(repo, "u1", "brunch", True)


@pytest.mark.asyncio
async def test_advance_schedule_moves_past_window(repo):
    now = datetime(2026, 3, 1, 7, 0, tzinfo=UTC)
    await update_preference(repo, "u1", "weight", True, hour=7, minute=30, now=now)

    tick = datetime(2026, 3, 1, 7, 31, tzinfo=UTC)
    due = await advance_schedule(repo, "u1", "2026-03-01T07:30", tick)

    assert due.notification_types == ["weight"]
    assert due.window_key == "2026-03-01T07:30"
    user = await repo.get_user("u1")
    assert user.last_notification_window == "2026-03-01T07:30"
    assert user.next_notification_utc == datetime(2026, 3, 1, 8, 30, tzinfo=UTC)
    assert user.next_notification_types == ["breakfast"]


@pytest.mark.asyncio
async def test_advance_schedule_runs_once_per_window(repo):
    now = datetime(2026, 3, 1, 7, 0, tzinfo=UTC)
    await update_preference(repo, "u1", "weight", True, hour=7, minute=30, now=now)
    tick = datetime(2026, 3, 1, 7, 31, tzinfo=UTC)

    assert await advance_schedule(repo, "u1", "2026-03-01T07:30", tick) is not None
    assert await advance_schedule(repo, "u1", "2026-03-01T07:30", tick) is None


@pytest.mark.asyncio
async def test_advance_schedule_skips_user_not_due(repo):
    now = datetime(2026, 3, 1, 7, 0, tzinfo=UTC)
    await update_preference(repo, "u1", "weight", True, hour=7, minute=30, now=now)

    assert await advance_schedule(repo, "u1", "2026-03-01T07:00", now) is None
    assert await advance_schedule(repo, "missing", "2026-03-01T07:00", now) is None


@pytest.mark.asyncio
async def test_backfill_gives_defaults(repo):
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    await repo.save_user(UserState(user_id="old", timezone="UTC"), now)
    await repo.save_user(UserState(user_id="broken-tz", timezone="Atlantis/Capital"), now)
    await update_preference(repo, "configured", "weight", False, now=now)

    processed, skipped = await backfill_notification_prefs(repo, default_timezone="UTC", now=now)

    assert (processed, skipped) == (2, 0)
    old = await repo.get_user("old")
    assert old.notification_prefs == dict(NOTIFICATION_DEFAULTS)
    assert old.next_notification_utc == datetime(2026, 3, 1, 7, 30, tzinfo=UTC)
    assert (await repo.get_user("broken-tz")).timezone == "UTC"
    assert (await repo.get_user("configured")).notification_prefs["weight"].enabled is False

    assert await backfill_notification_prefs(repo, now=now) == (0, 0)
