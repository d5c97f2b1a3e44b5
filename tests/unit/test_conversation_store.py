from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from rapport_sync.application.exceptions import AuthError, NetworkError, NotFoundError, ValidationError
from rapport_sync.application.mappers.conversation import column_prefix
from rapport_sync.domain.value_objects.enums import PushEventType, Table
from rapport_sync.services.conversation_store import ConversationStore
from tests.conftest import T0, make_identity, seed_conversation, seed_message, seed_user


@pytest.fixture
def store(records, bus, me):
    return ConversationStore(records, bus, lambda: me, call_timeout=0.05)


@pytest.fixture
def with_alice(records, me, alice):
    seed_user(records, alice)
    return seed_conversation(records, me.id, alice.id)


@pytest.mark.asyncio
async def test_refresh_orders_by_latest_message(store, records, me, alice, bob):
    seed_user(records, alice)
    seed_user(records, bob)
    carol = make_identity("Carol")
    older = seed_conversation(records, me.id, alice.id, last_message="hi", last_message_at=T0 - timedelta(hours=1))
    newer = seed_conversation(records, me.id, bob.id, last_message="yo", last_message_at=T0)
    empty = seed_conversation(records, me.id, carol.id)

    await store.start()

    conversations = store.list()
    assert [c.id for c in conversations] == [newer["id"], older["id"], empty["id"]]
    assert [c.display_name for c in conversations] == ["Bob", "Alice", "Unknown User"]
    assert conversations[0].last_message_preview == "yo"


@pytest.mark.asyncio
async def test_refresh_counts_unread_messages_addressed_to_me(store, records, me, alice, with_alice):
    cid = with_alice["id"]
    seed_message(records, cid, alice.id, me.id, "one")
    seed_message(records, cid, alice.id, me.id, "two")
    seed_message(records, cid, alice.id, me.id, "seen", is_read=True)
    seed_message(records, cid, me.id, alice.id, "mine")

    await store.start()

    assert store.get(cid).unread_count == 2


@pytest.mark.asyncio
async def test_requires_signed_in_user(records, bus):
    store = ConversationStore(records, bus, lambda: None)

    with pytest.raises(AuthError):
        await store.refresh()
    with pytest.raises(AuthError):
        await store.get_or_create(make_identity().id)


@pytest.mark.asyncio
async def test_update_settings_is_a_partial_merge(store, records, me, with_alice):
    cid = with_alice["id"]
    prefix = column_prefix(with_alice, me.id)
    records.tables[Table.CONVERSATIONS][0][f"{prefix}pinned"] = True
    await store.start()

    updated = await store.update_settings(cid, mute=True)

    assert updated.is_muted is True
    assert updated.is_pinned is True
    row = records.rows(Table.CONVERSATIONS, id=cid)[0]
    assert row[f"{prefix}muted"] is True
    assert row[f"{prefix}pinned"] is True
    other = "user2_" if prefix == "user1_" else "user1_"
    assert row[f"{other}muted"] is False


@pytest.mark.asyncio
async def test_update_settings_rolls_back_on_failure(store, records, with_alice):
    cid = with_alice["id"]
    await store.start()
    records.fail("update", Table.CONVERSATIONS)
    snapshots = []
    store.on_change(snapshots.append)

    with pytest.raises(NetworkError):
        await store.update_settings(cid, mute=True, archive=True)

    assert store.get(cid).is_muted is False
    assert store.get(cid).is_archived is False
    assert snapshots[0][0].is_muted is True


@pytest.mark.asyncio
async def test_update_settings_unknown_conversation(store, alice):
    await store.start()

    with pytest.raises(NotFoundError):
        await store.update_settings(alice.id, mute=True)


@pytest.mark.asyncio
async def test_concurrent_get_or_create_shares_one_call(store, records, alice):
    seed_user(records, alice)
    await store.start()

    ids = await asyncio.gather(*(store.get_or_create(alice.id) for _ in range(3)))

    assert len(set(ids)) == 1
    assert records.count("find_or_create") == 1
    assert store.get(ids[0]).display_name == "Alice"


@pytest.mark.asyncio
async def test_both_participants_get_the_same_conversation(store, records, bus, me, alice):
    other_side = ConversationStore(records, bus, lambda: alice, call_timeout=0.05)
    await store.start()
    await other_side.start()

    mine, theirs = await asyncio.gather(store.get_or_create(alice.id), other_side.get_or_create(me.id))

    assert mine == theirs
    assert len(records.rows(Table.CONVERSATIONS)) == 1


@pytest.mark.asyncio
async def test_get_or_create_with_self_is_rejected(store, me):
    await store.start()

    with pytest.raises(ValidationError):
        await store.get_or_create(me.id)


@pytest.mark.asyncio
async def test_duplicate_message_push_counts_once(store, records, bus, me, alice, with_alice):
    cid = with_alice["id"]
    await store.start()
    row = seed_message(records, cid, alice.id, me.id, "ping")

    await bus.deliver(Table.MESSAGES, row)
    await bus.deliver(Table.MESSAGES, row)
    await store.settle()

    conversation = store.get(cid)
    assert conversation.unread_count == 1
    assert conversation.last_message_preview == "ping"
    assert store.unread_ids(cid) == {row["id"]}


@pytest.mark.asyncio
async def test_stale_unread_push_after_clear_is_ignored(store, records, bus, me, alice, with_alice):
    cid = with_alice["id"]
    row = seed_message(records, cid, alice.id, me.id, "ping")
    await store.start()

    cleared = store.clear_unread(cid)
    await bus.deliver(Table.MESSAGES, row, PushEventType.UPDATE)
    await store.settle()

    assert cleared == {row["id"]}
    assert store.get(cid).unread_count == 0
    assert store.clear_unread(cid) == frozenset()


@pytest.mark.asyncio
async def test_restore_unread_undoes_clear(store, records, me, alice, with_alice):
    cid = with_alice["id"]
    seed_message(records, cid, alice.id, me.id)
    await store.start()

    cleared = store.clear_unread(cid)
    store.restore_unread(cid, cleared)

    assert store.get(cid).unread_count == 1


@pytest.mark.asyncio
async def test_deleting_newest_message_recomputes_preview(store, records, bus, me, alice, with_alice):
    cid = with_alice["id"]
    seed_message(records, cid, me.id, alice.id, "first", created_at=T0)
    second = seed_message(records, cid, me.id, alice.id, "second", created_at=T0 + timedelta(seconds=1))
    records.tables[Table.CONVERSATIONS][0].update(last_message="second", last_message_at=second["created_at"])
    await store.start()

    records.tables[Table.MESSAGES][1]["is_deleted"] = True
    await bus.deliver(Table.MESSAGES, {**second, "is_deleted": True}, PushEventType.UPDATE)
    await store.settle()

    conversation = store.get(cid)
    assert conversation.last_message_preview == "first"
    assert conversation.last_message_at == T0


@pytest.mark.asyncio
async def test_conversation_started_by_counterpart_appears(store, records, me, alice):
    seed_user(records, alice)
    await store.start()

    result = await records.find_or_create_conversation(alice.id, me.id)
    await store.settle()

    assert store.get(result.data["id"]).display_name == "Alice"


@pytest.mark.asyncio
async def test_message_for_unknown_conversation_loads_it(store, records, bus, me, alice):
    await store.start()
    conversation = seed_conversation(records, me.id, alice.id)
    row = seed_message(records, conversation["id"], alice.id, me.id, "surprise")

    await bus.deliver(Table.MESSAGES, row)
    await store.settle()

    loaded = store.get(conversation["id"])
    assert loaded.unread_count == 1
    assert loaded.last_message_preview == "surprise"


@pytest.mark.asyncio
async def test_delete_removes_conversation_and_messages(store, records, me, alice, with_alice):
    cid = with_alice["id"]
    seed_message(records, cid, alice.id, me.id)
    await store.start()

    await store.delete(cid)
    await store.settle()

    assert store.get(cid) is None
    assert records.rows(Table.MESSAGES, conversation_id=cid) == []
    assert records.rows(Table.CONVERSATIONS, id=cid) == []


@pytest.mark.asyncio
async def test_conversation_delete_push_removes_it(store, bus, with_alice):
    await store.start()

    await bus.deliver(Table.CONVERSATIONS, with_alice, PushEventType.DELETE)
    await store.settle()

    assert store.list() == ()


@pytest.mark.asyncio
async def test_stop_drops_state_and_subscriptions(store, bus, with_alice):
    await store.start()
    snapshots = []
    store.on_change(snapshots.append)

    await store.stop()

    assert store.list() == ()
    assert snapshots == [()]
    assert bus.subscribers(Table.CONVERSATIONS) == 0
    assert bus.subscribers(Table.MESSAGES) == 0
