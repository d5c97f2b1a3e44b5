"""Ordered conversation list for the signed-in user.

Unread counts are derived from the set of unread message ids addressed to the
local user per conversation, so a message can never be counted twice and the
count cannot go negative.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable
from uuid import UUID

from rapport_sync.application.dto.conversation import ConversationSettings
from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.exceptions import ConflictError, NotFoundError, ValidationError
from rapport_sync.application.listeners import Listeners
from rapport_sync.application.mailbox import Mailbox
from rapport_sync.application.mappers._values import as_datetime, as_uuid
from rapport_sync.application.mappers.conversation import (
    column_prefix,
    counterpart_of,
    ordered_pair,
    row_to_conversation,
)
from rapport_sync.application.mappers.message import preview_text, row_to_message
from rapport_sync.application.policies.deadlines import with_deadline
from rapport_sync.application.policies.permissions import assert_signed_in
from rapport_sync.application.ports.directory import DirectoryResult, PushBus, RecordStore, Subscription
from rapport_sync.config import settings
from rapport_sync.domain.entities.conversation import Conversation
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.entities.message import Message
from rapport_sync.domain.value_objects.enums import PushEventType, Table

logger = logging.getLogger(__name__)

_LIST = "conversations"


def _sort_key(conversation: Conversation) -> tuple[bool, float, str]:
    moment = conversation.last_message_at
    return moment is None, -(moment.timestamp() if moment else 0.0), str(conversation.id)


class ConversationStore:
    def __init__(
        self,
        records: RecordStore,
        push: PushBus,
        current_user: Callable[[], Identity | None],
        *,
        call_timeout: float = settings.DIRECTORY_CALL_TIMEOUT,
    ) -> None:
        self._records = records
        self._push = push
        self._current_user = current_user
        self._call_timeout = call_timeout

        self._me: UUID | None = None
        self._conversations: dict[UUID, Conversation] = {}
        self._prefixes: dict[UUID, str] = {}
        self._profiles: dict[UUID, dict[str, Any]] = {}
        self._unread: dict[UUID, set[UUID]] = {}
        self._read: dict[UUID, set[UUID]] = {}
        self._creating: dict[UUID, asyncio.Task[UUID]] = {}
        self._subscriptions: list[Subscription] = []
        self._listeners: Listeners[tuple[Conversation, ...]] = Listeners(_LIST)
        self._mailbox = Mailbox(_LIST)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Attach to the signed-in user: subscribe to pushes and load the list."""
        me = assert_signed_in(self._current_user()).id
        if self._me == me:
            return
        if self._me is not None:
            await self.stop()
        self._me = me
        self._subscriptions = [
            await self._push.subscribe(
                Table.CONVERSATIONS, {"user1_id": me}, self._on_conversation_push,
            ),
            await self._push.subscribe(
                Table.CONVERSATIONS, {"user2_id": me}, self._on_conversation_push,
            ),
            await self._push.subscribe(Table.MESSAGES, {"receiver_id": me}, self._on_message_push),
            await self._push.subscribe(Table.MESSAGES, {"sender_id": me}, self._on_message_push),
        ]
        await self.refresh()

    async def stop(self) -> None:
        """Detach from the current user and drop all state."""
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions = []
        for task in self._creating.values():
            task.cancel()
        self._creating.clear()
        await self._mailbox.close()
        had_state = bool(self._conversations)
        self._me = None
        self._conversations.clear()
        self._prefixes.clear()
        self._profiles.clear()
        self._unread.clear()
        self._read.clear()
        if had_state:
            self._publish()

    async def settle(self) -> None:
        await self._mailbox.join()

    # -- queries -------------------------------------------------------------

    def list(self) -> tuple[Conversation, ...]:
        return tuple(sorted(self._conversations.values(), key=_sort_key))

    def get(self, conversation_id: UUID) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def unread_ids(self, conversation_id: UUID) -> frozenset[UUID]:
        return frozenset(self._unread.get(conversation_id, ()))

    def on_change(self, listener: Callable[[tuple[Conversation, ...]], None]) -> Callable[[], None]:
        return self._listeners.add(listener)

    # -- intents -------------------------------------------------------------

    async def refresh(self) -> tuple[Conversation, ...]:
        """Reload every conversation, counterpart profile and unread message id."""
        me = self._require_me()
        await self._mailbox.post(_LIST, lambda: self._load(me))
        return self.list()

    async def get_or_create(self, counterpart_id: UUID) -> UUID:
        """Return the id of the single conversation with ``counterpart_id``.

        Concurrent local callers for the same counterpart share one directory
        call; the directory's find-or-insert keeps remote callers consistent.
        """
        me = self._require_me()
        if counterpart_id == me:
            raise ValidationError("Cannot start a conversation with yourself")
        task = self._creating.get(counterpart_id)
        if task is None:
            task = asyncio.create_task(
                self._find_or_create(me, counterpart_id),
                name=f"get-or-create-{counterpart_id}",
            )
            self._creating[counterpart_id] = task
            task.add_done_callback(lambda _t: self._creating.pop(counterpart_id, None))
        return await asyncio.shield(task)

    async def update_settings(
        self,
        conversation_id: UUID,
        mute: bool | None = None,
        pin: bool | None = None,
        archive: bool | None = None,
    ) -> Conversation:
        """Partial merge of the local user's flags; omitted fields are untouched."""
        self._require_me()
        changes = ConversationSettings(mute=mute, pin=pin, archive=archive)
        current = self._conversations.get(conversation_id)
        if current is None:
            raise NotFoundError("Conversation not found")
        if changes.is_empty():
            return current

        previous = current
        optimistic = replace(
            current,
            is_muted=current.is_muted if mute is None else mute,
            is_pinned=current.is_pinned if pin is None else pin,
            is_archived=current.is_archived if archive is None else archive,
        )
        self._conversations[conversation_id] = optimistic
        self._publish()

        result = await with_deadline(
            self._records.update(
                Table.CONVERSATIONS,
                {"id": conversation_id},
                changes.to_columns(self._prefixes[conversation_id]),
            ),
            self._call_timeout,
            "conversations.update",
        )
        if result.error is not None:
            latest = self._conversations.get(conversation_id)
            if latest is not None:
                self._conversations[conversation_id] = replace(
                    latest,
                    is_muted=previous.is_muted if mute is not None else latest.is_muted,
                    is_pinned=previous.is_pinned if pin is not None else latest.is_pinned,
                    is_archived=previous.is_archived if archive is not None else latest.is_archived,
                )
                self._publish()
            logger.warning(
                "Settings update for conversation %s failed: %s",
                conversation_id, result.error.detail,
            )
            raise result.error
        return self._conversations.get(conversation_id, optimistic)

    async def delete(self, conversation_id: UUID) -> None:
        """Remove a conversation together with all of its messages."""
        self._require_me()
        if conversation_id not in self._conversations:
            raise NotFoundError("Conversation not found")
        (
            await with_deadline(
                self._records.delete(Table.MESSAGES, {"conversation_id": conversation_id}),
                self._call_timeout,
                "messages.delete",
            )
        ).unwrap()
        (
            await with_deadline(
                self._records.delete(Table.CONVERSATIONS, {"id": conversation_id}),
                self._call_timeout,
                "conversations.delete",
            )
        ).unwrap()
        self._forget(conversation_id)
        self._publish()
        logger.info("Deleted conversation %s", conversation_id)

    # -- message bookkeeping -------------------------------------------------

    def record_message(self, message: Message) -> None:
        """Fold a confirmed message into unread ids and the preview."""
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None or self._me is None:
            return
        changed = self._track_unread(message)
        if message.is_deleted:
            if (
                conversation.last_message_at is not None
                and message.created_at >= conversation.last_message_at
            ):
                self._mailbox.post(_LIST, lambda: self._recompute_preview(message.conversation_id))
        elif conversation.last_message_at is None or message.created_at >= conversation.last_message_at:
            self._conversations[message.conversation_id] = replace(
                self._conversations[message.conversation_id],
                last_message_preview=preview_text(message),
                last_message_at=message.created_at,
            )
            changed = True
        if changed:
            self._publish()

    def clear_unread(self, conversation_id: UUID) -> frozenset[UUID]:
        """Zero the unread count; returns the ids that were unread."""
        previous = frozenset(self._unread.get(conversation_id, ()))
        if not previous:
            return previous
        self._unread[conversation_id] = set()
        self._read.setdefault(conversation_id, set()).update(previous)
        self._refresh_count(conversation_id)
        self._publish()
        return previous

    def mark_ids_read(self, conversation_id: UUID, message_ids: Iterable[UUID]) -> None:
        ids = set(message_ids)
        self._read.setdefault(conversation_id, set()).update(ids)
        unread = self._unread.get(conversation_id)
        if unread and unread & ids:
            unread -= ids
            self._refresh_count(conversation_id)
            self._publish()

    def restore_unread(self, conversation_id: UUID, message_ids: Iterable[UUID]) -> None:
        """Undo an optimistic :meth:`clear_unread` after the directory refused it."""
        ids = set(message_ids)
        if not ids or conversation_id not in self._conversations:
            return
        self._read.get(conversation_id, set()).difference_update(ids)
        self._unread.setdefault(conversation_id, set()).update(ids)
        self._refresh_count(conversation_id)
        self._publish()

    # -- internals -----------------------------------------------------------

    def _require_me(self) -> UUID:
        me = assert_signed_in(self._current_user()).id
        if self._me is not None and self._me != me:
            raise ValidationError("Conversation store is attached to another user")
        return me

    def _publish(self) -> None:
        self._listeners.notify(self.list())

    def _refresh_count(self, conversation_id: UUID) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        count = len(self._unread.get(conversation_id, ()))
        if conversation.unread_count != count:
            self._conversations[conversation_id] = replace(conversation, unread_count=count)

    def _track_unread(self, message: Message) -> bool:
        cid = message.conversation_id
        unread = self._unread.setdefault(cid, set())
        read = self._read.setdefault(cid, set())
        if message.is_read:
            read.add(message.id)
        was_unread = message.id in unread
        is_unread = (
            message.receiver_id == self._me
            and not message.is_read
            and message.id not in read
        )
        if is_unread == was_unread:
            return False
        if is_unread:
            unread.add(message.id)
        else:
            unread.discard(message.id)
        self._refresh_count(cid)
        return True

    def _forget(self, conversation_id: UUID) -> None:
        self._conversations.pop(conversation_id, None)
        self._prefixes.pop(conversation_id, None)
        self._unread.pop(conversation_id, None)
        self._read.pop(conversation_id, None)

    async def _call(self, call: Any, operation: str) -> DirectoryResult:
        return await with_deadline(call, self._call_timeout, operation)

    async def _load(self, me: UUID) -> None:
        as_first = await self._call(
            self._records.select(Table.CONVERSATIONS, {"user1_id": me}),
            "conversations.select",
        )
        as_second = await self._call(
            self._records.select(Table.CONVERSATIONS, {"user2_id": me}),
            "conversations.select",
        )
        rows = [*as_first.unwrap(), *as_second.unwrap()]

        counterpart_ids = {counterpart_of(row, me) for row in rows}
        profiles: dict[UUID, dict[str, Any]] = {}
        if counterpart_ids:
            users = await self._call(
                self._records.select(Table.USERS, {"id": list(counterpart_ids)}),
                "users.select",
            )
            if users.error is not None:
                logger.warning("Counterpart profiles unavailable: %s", users.error.detail)
            else:
                profiles = {as_uuid(user["id"]): user for user in users.data}

        unread_rows = await self._call(
            self._records.select(Table.MESSAGES, {"receiver_id": me, "is_read": False}),
            "messages.select",
        )
        unread: dict[UUID, set[UUID]] = {}
        for row in unread_rows.unwrap():
            unread.setdefault(as_uuid(row["conversation_id"]), set()).add(as_uuid(row["id"]))

        if self._me != me:
            logger.debug("Discarding conversation list loaded for %s", me)
            return

        self._conversations.clear()
        self._prefixes.clear()
        self._profiles = profiles
        self._unread = unread
        self._read = {}
        for row in rows:
            self._absorb_row(row, me)
        logger.info("Loaded %d conversations for %s", len(self._conversations), me)
        self._publish()

    def _absorb_row(self, row: dict[str, Any], me: UUID) -> Conversation:
        cid = as_uuid(row["id"])
        counterpart = self._profiles.get(counterpart_of(row, me))
        conversation = row_to_conversation(
            row, me, counterpart=counterpart, unread_count=len(self._unread.get(cid, ())),
        )
        existing = self._conversations.get(cid)
        if (
            existing is not None
            and existing.last_message_at is not None
            and (conversation.last_message_at is None or conversation.last_message_at < existing.last_message_at)
        ):
            conversation = replace(
                conversation,
                last_message_preview=existing.last_message_preview,
                last_message_at=existing.last_message_at,
            )
        self._conversations[cid] = conversation
        self._prefixes[cid] = column_prefix(row, me)
        return conversation

    async def _ensure_profile(self, user_id: UUID) -> None:
        if user_id in self._profiles:
            return
        result = await self._call(self._records.select(Table.USERS, {"id": user_id}), "users.select")
        if result.error is not None:
            logger.warning("Profile of %s unavailable: %s", user_id, result.error.detail)
            return
        if result.data:
            self._profiles[user_id] = result.data[0]

    async def _find_or_create(self, me: UUID, counterpart_id: UUID) -> UUID:
        result = await self._call(
            self._records.find_or_create_conversation(me, counterpart_id),
            "conversations.find_or_create",
        )
        if isinstance(result.error, ConflictError):
            user1, user2 = ordered_pair(me, counterpart_id)
            result = await self._call(
                self._records.select(Table.CONVERSATIONS, {"user1_id": user1, "user2_id": user2}),
                "conversations.select",
            )
            rows = result.unwrap()
            if not rows:
                raise NotFoundError("Conversation not found")
            row = rows[0]
        else:
            row = result.unwrap()

        cid = as_uuid(row["id"])
        if self._me == me and cid not in self._conversations:
            await self._ensure_profile(counterpart_id)
            self._absorb_row(row, me)
            self._publish()
        logger.info("Conversation with %s is %s", counterpart_id, cid)
        return cid

    async def _recompute_preview(self, conversation_id: UUID) -> None:
        result = await self._call(
            self._records.select(
                Table.MESSAGES,
                {"conversation_id": conversation_id, "is_deleted": False},
                order_by=("-created_at", "-id"),
                limit=1,
            ),
            "messages.select",
        )
        if result.error is not None:
            logger.warning("Preview of %s not recomputed: %s", conversation_id, result.error.detail)
            return
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        if result.data:
            newest = row_to_message(result.data[0])
            preview, moment = preview_text(newest), newest.created_at
        else:
            preview, moment = "", None
        self._conversations[conversation_id] = replace(
            conversation, last_message_preview=preview, last_message_at=moment,
        )
        self._publish()

    async def _on_conversation_push(self, event: PushEvent) -> None:
        self._mailbox.post(_LIST, lambda: self._apply_conversation_push(event))

    async def _apply_conversation_push(self, event: PushEvent) -> None:
        me = self._me
        if me is None:
            return
        cid = as_uuid(event.row.get("id"))
        if event.event_type is PushEventType.DELETE:
            if cid in self._conversations:
                self._forget(cid)
                self._publish()
            return
        if me not in (as_uuid(event.row.get("user1_id")), as_uuid(event.row.get("user2_id"))):
            return
        await self._ensure_profile(counterpart_of(event.row, me))
        if self._me != me:
            return
        self._absorb_row(event.row, me)
        self._publish()

    async def _on_message_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row.get("conversation_id"))
        if cid is None:
            return
        self._mailbox.post(_LIST, lambda: self._apply_message_push(event))

    async def _apply_message_push(self, event: PushEvent) -> None:
        me = self._me
        if me is None:
            return
        if event.event_type is PushEventType.DELETE:
            cid = as_uuid(event.row["conversation_id"])
            mid = as_uuid(event.row.get("id"))
            unread = self._unread.get(cid)
            if unread is not None and mid in unread:
                unread.discard(mid)
                self._refresh_count(cid)
                self._publish()
            last_at = as_datetime(event.row.get("created_at"))
            current = self._conversations.get(cid)
            if current is not None and last_at is not None and current.last_message_at == last_at:
                await self._recompute_preview(cid)
            return
        message = row_to_message(event.row)
        if message.conversation_id not in self._conversations:
            await self._load_conversation(me, message.conversation_id)
        self.record_message(message)

    async def _load_conversation(self, me: UUID, conversation_id: UUID) -> None:
        result = await self._call(
            self._records.select(Table.CONVERSATIONS, {"id": conversation_id}),
            "conversations.select",
        )
        if result.error is not None or not result.data:
            logger.warning("Conversation %s could not be loaded", conversation_id)
            return
        row = result.data[0]
        await self._ensure_profile(counterpart_of(row, me))
        if self._me == me:
            self._absorb_row(row, me)
