"""Tests for notification fan-out."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from platewise.db.models import DueUser, EventName
from platewise.engine.devices import register_device
from platewise.engine.dispatcher import Dispatcher, notification_id_for
from platewise.engine.scheduling import update_preference
from platewise.engine.templates import build_template_table
from platewise.utils.errors import InvalidRequestError

UTC = ZoneInfo("UTC")
NOW = datetime(2026, 3, 1, 7, 30, tzinfo=UTC)
WINDOW = "2026-03-01T07:30"


def due(user_id="u1", types=("weight",), timezone="UTC"):
    return DueUser(user_id=user_id, timezone=timezone, notification_types=list(types), window_key=WINDOW)


@pytest.fixture
def dispatcher(repo, transport):
    return Dispatcher(repo, transport, build_template_table())


def test_notification_id_is_deterministic():
    a = notification_id_for("weight", "u1", WINDOW, "d1")

    assert a == notification_id_for("weight", "u1", WINDOW, "d1")
    assert a != notification_id_for("weight", "u1", WINDOW, "d2")
    assert a != notification_id_for("weight", "u1", "2026-03-02T07:30", "d1")
    assert a != notification_id_for("lunch", "u1", WINDOW, "d1")


@pytest.mark.asyncio
async def test_sends_to_every_device(repo, transport, dispatcher):
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)
    await register_device(repo, "u1", "d2", "token-2", "android", now=NOW)

    summary = await dispatcher.dispatch([due()], NOW)

    assert summary.sent == 2
    assert summary.failed == 0
    assert sorted(n.push_token for n in transport.sent) == ["token-1", "token-2"]
    assert {r.notification_id for r in summary.records} == {
        notification_id_for("weight", "u1", WINDOW, "d1"),
        notification_id_for("weight", "u1", WINDOW, "d2"),
    }


@pytest.mark.asyncio
async def test_partial_failure_is_isolated(repo, transport, dispatcher):
    """One dead token does not stop the other device, and both attempts are logged."""
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)
    await register_device(repo, "u1", "d2", "dead-token", "android", now=NOW)
    transport.failing_tokens.add("dead-token")

    summary = await dispatcher.dispatch([due()], NOW)

    assert (summary.sent, summary.failed) == (1, 1)
    records = {r.device_id: r for r in await repo.get_deliveries("u1")}
    assert records["d1"].delivery_status == "success"
    assert records["d2"].delivery_status == "failed"
    assert records["d2"].error_message == "UNREGISTERED"


@pytest.mark.asyncio
async def test_transport_exception_becomes_failure(repo, dispatcher, transport):
    async def explode(notification):
        raise ConnectionError("socket closed")

    transport.send = explode
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)

    summary = await dispatcher.dispatch([due()], NOW)

    assert summary.failed == 1
    assert summary.records[0].error_message == "socket closed"


@pytest.mark.asyncio
async def test_each_due_type_is_sent(repo, transport, dispatcher):
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)

    await dispatcher.dispatch([due(types=("weight", "breakfast"))], NOW)

    assert sorted(n.notification_type for n in transport.sent) == ["breakfast", "weight"]
    links = {n.notification_type: n.link for n in transport.sent}
    assert links["weight"] == "platewise://entry"
    assert links["breakfast"] == "platewise://food/capture"


@pytest.mark.asyncio
async def test_user_without_devices(repo, transport, dispatcher):
    summary = await dispatcher.dispatch([due()], NOW)

    assert summary.users_without_devices == 1
    assert summary.records == []
    assert transport.sent == []


@pytest.mark.asyncio
async def test_stale_devices_are_skipped(repo, transport, dispatcher):
    await register_device(repo, "u1", "old", "token-old", "ios", now=NOW - timedelta(days=31))
    await register_device(repo, "u1", "new", "token-new", "ios", now=NOW - timedelta(days=2))

    await dispatcher.dispatch([due()], NOW)

    assert [n.device_id for n in transport.sent] == ["new"]


@pytest.mark.asyncio
async def test_device_moves_to_new_owner(repo, transport, dispatcher):
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)
    await register_device(repo, "u2", "d1", "token-1b", "ios", now=NOW)

    summary = await dispatcher.dispatch([due("u1"), due("u2")], NOW)

    assert summary.users_without_devices == 1
    assert [(n.user_id, n.push_token) for n in transport.sent] == [("u2", "token-1b")]


@pytest.mark.asyncio
async def test_personalized_copy(repo, transport, dispatcher):
    await update_preference(repo, "u1", "weight", True, now=NOW)
    await repo.set_display_name("u1", "Asha")
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)
    await register_device(repo, "u2", "d2", "token-2", "ios", now=NOW)

    await dispatcher.dispatch([due("u1"), due("u2")], NOW)

    titles = {n.user_id: n.title for n in transport.sent}
    assert titles["u1"] == "Good morning, Asha! ⚖️"
    assert titles["u2"] == "Good morning, Friend! ⚖️"


@pytest.mark.asyncio
async def test_repeated_window_logs_once(repo, transport, dispatcher):
    """Dispatching the same window twice keeps one delivery record per device."""
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)

    await dispatcher.dispatch([due()], NOW)
    await dispatcher.dispatch([due()], NOW)

    assert len(await repo.get_deliveries("u1")) == 1


@pytest.mark.asyncio
async def test_delivery_is_tracked_in_ledger(repo, transport, dispatcher):
    await update_preference(repo, "u1", "weight", True, timezone="Asia/Kolkata", now=NOW)
    await register_device(repo, "u1", "d1", "token-1", "android", now=NOW)

    summary = await dispatcher.dispatch([due(timezone="Asia/Kolkata")], NOW)
    await repo.drain_background_tasks()

    event = await repo.get_event(summary.records[0].notification_id)
    assert event.event_name == EventName.NOTIFICATION_DELIVERED
    assert event.platform == "android"
    assert event.metadata["notification_type"] == "WEIGHT"
    assert event.metadata["delivery_status"] == "success"
    assert (await repo.get_user("u1")).timezone == "Asia/Kolkata"


@pytest.mark.asyncio
async def test_register_device_validates(repo):
    with pytest.raises(InvalidRequestError):
        await register_device(repo, "u1", "d1", "token-1", "windows", now=NOW)
    with pytest.raises(InvalidRequestError):
        await register_device(repo, "u1", "d1", "", "ios", now=NOW)


@pytest.mark.asyncio
async def test_register_device_tracks_event(repo):
    await register_device(repo, "u1", "d1", "token-1", "ios", timezone="Europe/Paris", now=NOW)
    await repo.drain_background_tasks()

    events = await repo.get_events_by_user("u1")
    assert [e.event_name for e in events] == [EventName.DEVICE_REGISTERED]
    assert (await repo.get_user("u1")).timezone == "Europe/Paris"


@pytest.mark.asyncio
async def test_delivery_log_failure_does_not_stop_batch(repo, transport, dispatcher, monkeypatch):
    """An unexpected error while logging one record leaves the other sends and records intact."""
    await register_device(repo, "u1", "d1", "token-1", "ios", now=NOW)
    await register_device(repo, "u1", "d2", "token-2", "ios", now=NOW)
    original = repo.log_delivery

    async def flaky_log_delivery(record):
        if record.device_id == "d1":
            raise RuntimeError("serializer blew up")
        return await original(record)

    monkeypatch.setattr(repo, "log_delivery", flaky_log_delivery)

    summary = await dispatcher.dispatch([due()], NOW)

    assert summary.sent == 2
    assert len(summary.records) == 2
    assert [r.device_id for r in await repo.get_deliveries("u1")] == ["d2"]
