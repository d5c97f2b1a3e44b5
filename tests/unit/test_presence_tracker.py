from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from rapport_sync.domain.value_objects.enums import PushEventType, Table
from rapport_sync.services.presence_tracker import PresenceTracker, format_last_seen
from tests.conftest import T0, until


@pytest.fixture
def tracker(records, bus, clock, me):
    return PresenceTracker(
        records, bus, lambda: me,
        clock=clock, heartbeat_interval=3600, ttl_seconds=90, sweep_interval=0, call_timeout=0.05,
    )


def _presence_row(user_id, online, seen):
    return {"user_id": user_id, "is_online": online, "last_seen_at": seen}


@pytest.mark.asyncio
async def test_heartbeat_creates_then_updates_row(tracker, records, clock, me):
    assert await tracker.heartbeat() is True
    clock.advance(10)
    assert await tracker.heartbeat() is True

    [row] = records.rows(Table.PRESENCE, user_id=me.id)
    assert row["is_online"] is True
    assert row["last_seen_at"] == clock.now()
    assert records.count("insert", Table.PRESENCE) == 1


@pytest.mark.asyncio
async def test_heartbeat_without_identity_does_nothing(records, bus, clock):
    tracker = PresenceTracker(records, bus, lambda: None, clock=clock, sweep_interval=0)

    assert await tracker.heartbeat() is False
    assert records.calls == []


@pytest.mark.asyncio
async def test_heartbeat_failure_is_silent(tracker, records):
    records.fail("update", Table.PRESENCE)

    assert await tracker.heartbeat() is False


@pytest.mark.asyncio
async def test_heartbeat_timeout_is_silent(tracker, records):
    records.hold("update", Table.PRESENCE)

    assert await tracker.heartbeat() is False


def test_unknown_user_is_offline(tracker, alice):
    record = tracker.presence_of(alice.id)

    assert record.is_online is False
    assert record.last_seen_at is None


@pytest.mark.asyncio
async def test_online_record_expires_after_ttl(tracker, bus, clock, alice):
    await tracker.start()
    seen = []
    tracker.subscribe(seen.append)

    await bus.deliver(Table.PRESENCE, _presence_row(alice.id, True, clock.now()))
    await until(lambda: tracker.presence_of(alice.id).is_online)
    seen.clear()

    clock.advance(91)

    assert tracker.presence_of(alice.id).is_online is False
    demoted = tracker.sweep()
    assert [r.user_id for r in demoted] == [alice.id]
    assert seen == demoted
    assert tracker.sweep() == []
    await tracker.stop()


@pytest.mark.asyncio
async def test_older_push_does_not_override_newer_state(tracker, bus, clock, alice):
    await tracker.start()
    newer = clock.now()
    older = newer - timedelta(seconds=30)

    await bus.deliver(Table.PRESENCE, _presence_row(alice.id, False, newer))
    await bus.deliver(Table.PRESENCE, _presence_row(alice.id, True, older))
    await until(lambda: tracker.presence_of(alice.id).last_seen_at is not None)
    await asyncio.sleep(0.01)

    record = tracker.presence_of(alice.id)
    assert record.is_online is False
    assert record.last_seen_at == newer
    await tracker.stop()


@pytest.mark.asyncio
async def test_deleted_presence_row_means_offline(tracker, bus, clock, alice):
    await tracker.start()
    await bus.deliver(Table.PRESENCE, _presence_row(alice.id, True, clock.now()))
    await until(lambda: tracker.presence_of(alice.id).is_online)

    await bus.deliver(Table.PRESENCE, _presence_row(alice.id, True, clock.now()), PushEventType.DELETE)
    await until(lambda: not tracker.presence_of(alice.id).is_online)
    await tracker.stop()


@pytest.mark.asyncio
async def test_stop_heartbeat_announces_offline_once(tracker, records, me):
    tracker.start_heartbeat()
    await until(lambda: bool(records.rows(Table.PRESENCE, user_id=me.id)))

    tracker.stop_heartbeat()
    tracker.stop_heartbeat()
    await tracker.stop()

    [row] = records.rows(Table.PRESENCE, user_id=me.id)
    assert row["is_online"] is False
    assert records.count("update", Table.PRESENCE) == 2


@pytest.mark.asyncio
async def test_pause_leaves_expiry_to_ttl(tracker, records, me):
    tracker.start_heartbeat()
    await until(lambda: bool(records.rows(Table.PRESENCE, user_id=me.id)))

    tracker.pause()
    await asyncio.sleep(0.01)

    assert records.rows(Table.PRESENCE, user_id=me.id)[0]["is_online"] is True


@pytest.mark.asyncio
async def test_resume_beats_immediately(tracker, records, clock, me):
    await tracker.heartbeat()
    tracker.pause()
    clock.advance(120)

    await tracker.resume()

    assert records.rows(Table.PRESENCE, user_id=me.id)[0]["last_seen_at"] == clock.now()
    await tracker.stop()


@pytest.mark.asyncio
async def test_presence_of_many_fetches_missing_once(tracker, records, clock, alice, bob):
    records.seed(Table.PRESENCE, **_presence_row(alice.id, True, clock.now()))
    records.seed(Table.PRESENCE, **_presence_row(bob.id, False, clock.now() - timedelta(hours=2)))

    first = await tracker.presence_of_many([alice.id, bob.id, alice.id])
    second = await tracker.presence_of_many([alice.id, bob.id])

    assert first[alice.id].is_online is True
    assert first[bob.id].is_online is False
    assert first == second
    assert records.count("select", Table.PRESENCE) == 1


@pytest.mark.parametrize(
    ("seconds_ago", "expected"),
    [
        (None, "Long time ago"),
        (20, "Just now"),
        (60, "1 min ago"),
        (15 * 60, "15 mins ago"),
        (3600, "1 hour ago"),
        (5 * 3600, "5 hours ago"),
        (86400, "1 day ago"),
        (3 * 86400, "3 days ago"),
        (30 * 86400, "Long time ago"),
    ],
)
def test_format_last_seen(seconds_ago, expected):
    seen = None if seconds_ago is None else T0 - timedelta(seconds=seconds_ago)

    assert format_last_seen(seen, T0) == expected
