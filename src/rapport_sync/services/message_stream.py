"""Per-conversation message logs with optimistic actions.

Every locally initiated mutation is applied to the log first and tracked as a
:class:`PendingAction` keyed by a fresh correlation id. Directory confirmations
and push events are folded into the log through one ordered queue per
conversation; reconciliation is by message id first, then by ``client_msg_id``.
An edit or delete whose effect already arrived in an authoritative copy is
settled even when its own directory call failed.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.exceptions import (
    AppError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from rapport_sync.application.listeners import Listeners
from rapport_sync.application.mailbox import Mailbox
from rapport_sync.application.mappers._values import as_uuid
from rapport_sync.application.mappers.message import (
    count_reactions,
    message_to_row,
    reaction_key,
    row_to_message,
    row_to_pin,
)
from rapport_sync.application.policies.deadlines import with_deadline
from rapport_sync.application.policies.permissions import assert_sender, assert_signed_in
from rapport_sync.application.ports.clock import Clock, SystemClock
from rapport_sync.application.ports.directory import DirectoryResult, PushBus, RecordStore, Subscription
from rapport_sync.application.ports.storage import ObjectStorage
from rapport_sync.config import settings
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.entities.message import Message, Pin, ReactionCount
from rapport_sync.domain.entities.pending_action import PendingAction
from rapport_sync.domain.value_objects.enums import ActionKind, DeliveryState, MessageKind, PushEventType, Table
from rapport_sync.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamSnapshot:
    conversation_id: UUID
    messages: tuple[Message, ...]
    pins: tuple[Pin, ...] = ()


def kind_for_content_type(content_type: str) -> MessageKind:
    major = content_type.split("/", 1)[0]
    if major == "image":
        return MessageKind.IMAGE
    if major == "video":
        return MessageKind.VIDEO
    if major == "audio":
        return MessageKind.VOICE
    return MessageKind.DOCUMENT


def _is_provisional(message: Message) -> bool:
    """Optimistic entries carry their correlation id as a stand-in message id."""
    return message.id == message.client_msg_id


def _merge(existing: Message, incoming: Message) -> Message:
    """Fold an authoritative copy into a local entry with the same id.

    Read, edited and deleted flags only ever go from False to True, so a
    duplicated or reordered push cannot undo them.
    """
    body, payload = incoming.body, incoming.payload
    if existing.is_edited and not incoming.is_edited:
        body, payload = existing.body, existing.payload
    return replace(
        incoming,
        body=body,
        payload=payload,
        delivered_at=incoming.delivered_at or existing.delivered_at,
        is_read=existing.is_read or incoming.is_read,
        is_edited=existing.is_edited or incoming.is_edited,
        is_deleted=existing.is_deleted or incoming.is_deleted,
        delivery=existing.delivery,
    )


def _carries(action: PendingAction, message: Message) -> bool:
    """Whether an authoritative copy already reflects an edit or delete action."""
    if action.kind is ActionKind.EDIT:
        return message.is_edited and message.body == action.args["body"]
    if action.kind is ActionKind.DELETE:
        return message.is_deleted
    return False


class MessageStream:
    def __init__(
        self,
        records: RecordStore,
        push: PushBus,
        current_user: Callable[[], Identity | None],
        conversations: ConversationStore,
        *,
        storage: ObjectStorage | None = None,
        clock: Clock | None = None,
        call_timeout: float = settings.DIRECTORY_CALL_TIMEOUT,
        bucket: str = settings.ATTACHMENTS_BUCKET,
    ) -> None:
        self._records = records
        self._push = push
        self._current_user = current_user
        self._conversations = conversations
        self._storage = storage
        self._clock = clock or SystemClock()
        self._call_timeout = call_timeout
        self._bucket = bucket

        self._logs: dict[UUID, dict[UUID, Message]] = {}
        self._pins: dict[UUID, dict[UUID, Pin]] = {}
        # conversation -> message -> {(user_id, emoji)}
        self._reactions: dict[UUID, dict[UUID, set[tuple[UUID, str]]]] = {}
        # my starred message ids -> when they were starred
        self._stars: dict[UUID, datetime] = {}
        self._pending: dict[UUID, PendingAction] = {}
        # correlation id of a retried send -> key of the optimistic entry it replaces
        self._aliases: dict[UUID, UUID] = {}
        self._subscriptions: dict[UUID, list[Subscription]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._listeners: Listeners[StreamSnapshot] = Listeners("messages")
        self._mailbox = Mailbox("messages")

    # -- lifecycle -----------------------------------------------------------

    async def open(self, conversation_id: UUID) -> tuple[Message, ...]:
        """Load history, pins and reactions, then follow pushes for the conversation."""
        assert_signed_in(self._current_user())
        if conversation_id not in self._subscriptions:
            self._subscriptions[conversation_id] = [
                await self._push.subscribe(
                    Table.MESSAGES, {"conversation_id": conversation_id}, self._on_message_push,
                ),
                await self._push.subscribe(
                    Table.PINNED_MESSAGES, {"conversation_id": conversation_id}, self._on_pin_push,
                ),
                await self._push.subscribe(
                    Table.MESSAGE_REACTIONS, {"conversation_id": conversation_id}, self._on_reaction_push,
                ),
            ]
        await self._mailbox.post(conversation_id, lambda: self._load(conversation_id))
        return self.messages(conversation_id)

    async def close(self, conversation_id: UUID) -> None:
        for subscription in self._subscriptions.pop(conversation_id, []):
            await subscription.close()
        self._pins.pop(conversation_id, None)
        self._reactions.pop(conversation_id, None)
        log = self._logs.get(conversation_id)
        if log is not None:
            # unconfirmed entries survive so a later open still shows them
            kept = {key: m for key, m in log.items() if m.delivery is not DeliveryState.CONFIRMED}
            if kept:
                self._logs[conversation_id] = kept
            else:
                del self._logs[conversation_id]

    async def stop(self) -> None:
        for conversation_id in list(self._subscriptions):
            await self.close(conversation_id)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._mailbox.close()
        self._logs.clear()
        self._pins.clear()
        self._reactions.clear()
        self._stars.clear()
        self._pending.clear()
        self._aliases.clear()

    async def settle(self) -> None:
        """Wait for in-flight deliveries and queued push work."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._mailbox.join()

    # -- queries -------------------------------------------------------------

    def messages(self, conversation_id: UUID, *, include_deleted: bool = False) -> tuple[Message, ...]:
        log = self._logs.get(conversation_id, {})
        ordered = sorted(log.values(), key=lambda m: m.sort_key)
        if include_deleted:
            return tuple(ordered)
        return tuple(m for m in ordered if not m.is_deleted)

    def pending_actions(self, conversation_id: UUID | None = None) -> tuple[PendingAction, ...]:
        return tuple(
            action for action in self._pending.values()
            if conversation_id is None or action.conversation_id == conversation_id
        )

    def pending(self, correlation_id: UUID) -> PendingAction | None:
        return self._pending.get(correlation_id)

    def pinned(self, conversation_id: UUID) -> tuple[Pin, ...]:
        now = self._clock.now()
        pins = self._pins.get(conversation_id, {}).values()
        return tuple(sorted((p for p in pins if p.is_active(now)), key=lambda p: p.created_at))

    def is_pinned(self, message_id: UUID) -> bool:
        now = self._clock.now()
        for pins in self._pins.values():
            pin = pins.get(message_id)
            if pin is not None:
                return pin.is_active(now)
        return False

    def reactions(self, message_id: UUID) -> tuple[ReactionCount, ...]:
        me = self._current_user()
        for by_message in self._reactions.values():
            keys = by_message.get(message_id)
            if keys is not None:
                return count_reactions(keys, me.id if me else None)
        return ()

    def is_starred(self, message_id: UUID) -> bool:
        return message_id in self._stars

    def on_message(self, listener: Callable[[StreamSnapshot], None]) -> Callable[[], None]:
        return self._listeners.add(listener)

    # -- sending -------------------------------------------------------------

    def send(
        self,
        conversation_id: UUID,
        kind: MessageKind = MessageKind.TEXT,
        body: str | None = None,
        payload: dict[str, Any] | None = None,
        reply_to: UUID | None = None,
    ) -> PendingAction:
        """Append an optimistic message and deliver it in the background.

        ``reply_to`` names a delivered message of the same conversation that
        this one answers.
        """
        me = assert_signed_in(self._current_user())
        kind = MessageKind(kind)
        if kind is MessageKind.TEXT:
            body = (body or "").strip()
            if not body:
                raise ValidationError("Message cannot be empty")
        elif not payload:
            raise ValidationError(f"A {kind} message needs a payload")
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if reply_to is not None:
            target = self._find(reply_to)
            if target is None or target.conversation_id != conversation_id or _is_provisional(target):
                raise NotFoundError("Replied-to message not found")

        correlation_id = uuid.uuid4()
        now = self._clock.now()
        message = Message(
            id=correlation_id,
            conversation_id=conversation_id,
            sender_id=me.id,
            receiver_id=conversation.counterpart_id,
            kind=kind,
            body=body,
            payload=payload,
            created_at=now,
            client_msg_id=correlation_id,
            reply_to_id=reply_to,
            delivery=DeliveryState.PENDING,
        )
        action = PendingAction(
            correlation_id=correlation_id,
            kind=ActionKind.SEND,
            conversation_id=conversation_id,
            created_at=now,
            message_id=correlation_id,
            args={"kind": kind, "body": body, "payload": payload, "reply_to": reply_to},
        )
        self._logs.setdefault(conversation_id, {})[correlation_id] = message
        self._pending[correlation_id] = action
        self._publish(conversation_id)
        self._spawn(self._deliver(action, message), f"send-{correlation_id}")
        logger.debug("Queued %s message %s in %s", kind, correlation_id, conversation_id)
        return action

    def send_location(
        self,
        conversation_id: UUID,
        lat: float,
        lng: float,
        address: str | None = None,
    ) -> PendingAction:
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
            raise ValidationError("Invalid coordinates")
        return self.send(
            conversation_id,
            MessageKind.LOCATION,
            body=address or "Location",
            payload={"lat": lat, "lng": lng, "address": address},
        )

    async def send_attachment(
        self,
        conversation_id: UUID,
        data: bytes,
        file_name: str,
        content_type: str | None = None,
        kind: MessageKind | None = None,
    ) -> PendingAction:
        """Upload the bytes, then send a message embedding the durable URL."""
        me = assert_signed_in(self._current_user())
        if self._storage is None:
            raise ValidationError("Attachments are not available")
        if not data:
            raise ValidationError("File is empty")
        if self._conversations.get(conversation_id) is None:
            raise NotFoundError("Conversation not found")
        content_type = content_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        extension = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
        path = f"{self._bucket}/{me.id}/{int(self._clock.now().timestamp() * 1000)}.{extension}"

        uploaded = await with_deadline(
            self._storage.upload(path, data, content_type),
            self._call_timeout,
            "storage.upload",
        )
        url = uploaded.unwrap()
        return self.send(
            conversation_id,
            kind or kind_for_content_type(content_type),
            body=file_name,
            payload={
                "url": url,
                "file_name": file_name,
                "file_size": len(data),
                "content_type": content_type,
            },
        )

    def forward(self, message_id: UUID, to_conversation_id: UUID) -> PendingAction:
        source = self._find(message_id)
        if source is None or source.is_deleted:
            raise NotFoundError("Message not found")
        return self.send(to_conversation_id, source.kind, body=source.body, payload=source.payload)

    def retry(self, correlation_id: UUID) -> PendingAction:
        """Re-issue a failed action under a new correlation id."""
        action = self._pending.get(correlation_id)
        if action is None:
            raise NotFoundError("No such pending action")
        if action.state is not DeliveryState.FAILED:
            raise ValidationError("Only failed actions can be retried")
        assert_signed_in(self._current_user())

        new_id = uuid.uuid4()
        retried = replace(
            action,
            correlation_id=new_id,
            created_at=self._clock.now(),
            state=DeliveryState.PENDING,
            error=None,
        )
        del self._pending[correlation_id]
        self._pending[new_id] = retried

        if action.kind is ActionKind.SEND:
            entry_key = self._aliases.pop(correlation_id, correlation_id)
            self._aliases[new_id] = entry_key
            entry = self._logs.get(action.conversation_id, {}).get(entry_key)
            if entry is None:
                del self._pending[new_id]
                raise NotFoundError("Message not found")
            entry = replace(entry, delivery=DeliveryState.PENDING)
            self._logs[action.conversation_id][entry_key] = entry
            self._publish(action.conversation_id)
            self._spawn(
                self._deliver(retried, replace(entry, client_msg_id=new_id)),
                f"send-{new_id}",
            )
        elif action.kind is ActionKind.EDIT:
            self._spawn(self._run_edit(retried), f"edit-{new_id}")
        elif action.kind is ActionKind.DELETE:
            self._spawn(self._run_delete(retried), f"delete-{new_id}")
        else:
            del self._pending[new_id]
            raise ValidationError(f"{action.kind} actions cannot be retried")
        logger.info("Retrying %s action %s as %s", action.kind, correlation_id, new_id)
        return retried

    def discard(self, correlation_id: UUID) -> None:
        """Drop a failed action; a failed send also loses its message."""
        action = self._pending.get(correlation_id)
        if action is None or action.state is not DeliveryState.FAILED:
            return
        del self._pending[correlation_id]
        log = self._logs.get(action.conversation_id, {})
        if action.kind is ActionKind.SEND:
            log.pop(self._aliases.pop(correlation_id, correlation_id), None)
        elif action.message_id in log:
            entry = log[action.message_id]
            if action.kind is ActionKind.EDIT and action.args:
                entry = replace(
                    entry,
                    body=action.args.get("previous_body"),
                    is_edited=action.args.get("was_edited", False),
                )
            log[action.message_id] = replace(entry, delivery=DeliveryState.CONFIRMED)
        self._publish(action.conversation_id)

    async def _deliver(self, action: PendingAction, message: Message) -> None:
        result = await with_deadline(
            self._records.insert(Table.MESSAGES, message_to_row(message)),
            self._call_timeout,
            "messages.insert",
        )
        await self._mailbox.post(
            action.conversation_id, lambda: self._settle_send(action, result.data, result.error),
        )

    async def _settle_send(self, action: PendingAction, row: Any, error: AppError | None) -> None:
        correlation_id = action.correlation_id
        if correlation_id not in self._pending:
            # superseded: a push already reconciled this send, or it was discarded
            return
        if error is None:
            self._upsert(row_to_message(row))
            return
        entry_key = self._aliases.get(correlation_id, correlation_id)
        log = self._logs.get(action.conversation_id, {})
        entry = log.get(entry_key)
        if entry is not None:
            log[entry_key] = replace(entry, delivery=DeliveryState.FAILED)
        self._pending[correlation_id] = replace(action, state=DeliveryState.FAILED, error=error.detail)
        logger.warning("Send %s failed: %s", correlation_id, error.detail)
        self._publish(action.conversation_id)

    # -- edits ---------------------------------------------------------------

    async def edit(self, message_id: UUID, new_body: str) -> Message | None:
        """Replace the body of one of my text messages."""
        me = assert_signed_in(self._current_user())
        message = assert_sender(self._find(message_id), me)
        if message.kind is not MessageKind.TEXT:
            raise ValidationError("Only text messages can be edited")
        new_body = (new_body or "").strip()
        if not new_body:
            raise ValidationError("Message cannot be empty")
        if _is_provisional(message):
            raise ValidationError("Message is not delivered yet")
        action = PendingAction(
            correlation_id=uuid.uuid4(),
            kind=ActionKind.EDIT,
            conversation_id=message.conversation_id,
            created_at=self._clock.now(),
            message_id=message_id,
            args={"body": new_body, "previous_body": message.body, "was_edited": message.is_edited},
        )
        self._pending[action.correlation_id] = action
        return await self._run_edit(action)

    async def _run_edit(self, action: PendingAction) -> Message | None:
        me = assert_signed_in(self._current_user())
        log = self._logs.get(action.conversation_id, {})
        body = action.args["body"]
        current = log.get(action.message_id)
        if current is not None:
            log[action.message_id] = replace(current, body=body, is_edited=True, delivery=DeliveryState.PENDING)
            self._publish(action.conversation_id)

        result = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"id": action.message_id, "sender_id": me.id},
                {"body": body, "is_edited": True, "edited_at": self._clock.now()},
            ),
            self._call_timeout,
            "messages.update",
        )
        error = result.error
        if error is None and not result.data:
            error = NotFoundError("Message not found")
        if error is not None and action.correlation_id not in self._pending:
            # a push carrying the new body arrived while the call was failing
            return log.get(action.message_id)
        if error is not None:
            self._fail(action, error)
            entry = log.get(action.message_id)
            if entry is not None:
                log[action.message_id] = replace(entry, delivery=DeliveryState.FAILED)
            self._publish(action.conversation_id)
            raise error

        self._pending.pop(action.correlation_id, None)
        entry = log.get(action.message_id)
        if entry is not None:
            log[action.message_id] = replace(entry, delivery=DeliveryState.CONFIRMED)
        confirmed = self._upsert(row_to_message(result.data[0]))
        return confirmed

    async def soft_delete(self, message_id: UUID) -> None:
        """Hide one of my messages; its slot in the ordering is kept."""
        me = assert_signed_in(self._current_user())
        message = assert_sender(self._find(message_id), me)
        if _is_provisional(message):
            raise ValidationError("Message is not delivered yet")
        action = PendingAction(
            correlation_id=uuid.uuid4(),
            kind=ActionKind.DELETE,
            conversation_id=message.conversation_id,
            created_at=self._clock.now(),
            message_id=message_id,
        )
        self._pending[action.correlation_id] = action
        await self._run_delete(action)

    async def _run_delete(self, action: PendingAction) -> None:
        me = assert_signed_in(self._current_user())
        log = self._logs.get(action.conversation_id, {})
        current = log.get(action.message_id)
        if current is not None:
            log[action.message_id] = replace(current, is_deleted=True, delivery=DeliveryState.PENDING)
            self._publish(action.conversation_id)

        result = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"id": action.message_id, "sender_id": me.id},
                {"is_deleted": True, "deleted_at": self._clock.now()},
            ),
            self._call_timeout,
            "messages.update",
        )
        error = result.error
        if error is None and not result.data:
            error = NotFoundError("Message not found")
        if error is not None and action.correlation_id not in self._pending:
            return
        if error is not None:
            self._fail(action, error)
            entry = log.get(action.message_id)
            if entry is not None:
                log[action.message_id] = replace(entry, is_deleted=False, delivery=DeliveryState.FAILED)
            self._publish(action.conversation_id)
            raise error

        self._pending.pop(action.correlation_id, None)
        entry = log.get(action.message_id)
        if entry is not None:
            log[action.message_id] = replace(entry, delivery=DeliveryState.CONFIRMED)
        self._upsert(row_to_message(result.data[0]))

    # -- read receipts -------------------------------------------------------

    async def mark_read(self, conversation_id: UUID) -> int:
        """Mark everything addressed to me in the conversation as read.

        Idempotent: returns 0 without any directory call when nothing is unread.
        """
        me = assert_signed_in(self._current_user())
        log = self._logs.get(conversation_id, {})
        flipped = [
            key for key, m in log.items()
            if m.receiver_id == me.id and not m.is_read and m.delivery is DeliveryState.CONFIRMED
        ]
        known_unread = self._conversations.unread_ids(conversation_id)
        if not flipped and not known_unread:
            return 0

        for key in flipped:
            log[key] = replace(log[key], is_read=True)
        cleared = self._conversations.clear_unread(conversation_id)
        self._publish(conversation_id)

        result = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"conversation_id": conversation_id, "receiver_id": me.id, "is_read": False},
                {"is_read": True, "read_at": self._clock.now()},
            ),
            self._call_timeout,
            "messages.update",
        )
        if result.error is not None:
            log = self._logs.get(conversation_id, {})
            for key in flipped:
                if key in log:
                    log[key] = replace(log[key], is_read=False)
            self._conversations.restore_unread(conversation_id, cleared)
            self._publish(conversation_id)
            logger.warning("mark_read for %s failed: %s", conversation_id, result.error.detail)
            raise result.error

        rows = result.data or []
        self._conversations.mark_ids_read(conversation_id, (as_uuid(row["id"]) for row in rows))
        for row in rows:
            self._upsert(row_to_message(row), record=False)
        count = len(set(flipped) | set(cleared) | {as_uuid(row["id"]) for row in rows})
        logger.debug("Marked %d messages read in %s", count, conversation_id)
        return count

    # -- pins ----------------------------------------------------------------

    async def pin(self, message_id: UUID, expires_at: datetime | None = None) -> Pin:
        me = assert_signed_in(self._current_user())
        message = self._find(message_id)
        if message is None or message.is_deleted or _is_provisional(message):
            raise NotFoundError("Message not found")
        now = self._clock.now()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Pin expiry must be in the future")
        pins = self._pins.setdefault(message.conversation_id, {})
        previous = pins.get(message_id)
        pin = Pin(
            message_id=message_id,
            conversation_id=message.conversation_id,
            pinned_by=me.id,
            created_at=now,
            expires_at=expires_at,
        )
        pins[message_id] = pin
        self._publish(message.conversation_id)

        row = {
            "message_id": message_id,
            "conversation_id": message.conversation_id,
            "pinned_by": me.id,
            "expires_at": expires_at,
        }
        result = await with_deadline(
            self._records.insert(Table.PINNED_MESSAGES, row),
            self._call_timeout,
            "pinned_messages.insert",
        )
        if isinstance(result.error, ConflictError):
            result = await with_deadline(
                self._records.update(
                    Table.PINNED_MESSAGES,
                    {"message_id": message_id},
                    {"pinned_by": me.id, "expires_at": expires_at},
                ),
                self._call_timeout,
                "pinned_messages.update",
            )
        if result.error is not None:
            if previous is None:
                pins.pop(message_id, None)
            else:
                pins[message_id] = previous
            self._publish(message.conversation_id)
            raise result.error

        stored = result.data[0] if isinstance(result.data, list) and result.data else result.data
        confirmed = row_to_pin(stored) if isinstance(stored, dict) and stored.get("created_at") else pin
        pins[message_id] = confirmed
        self._publish(message.conversation_id)
        return confirmed

    async def unpin(self, message_id: UUID) -> None:
        """Idempotent: unpinning a message that is not pinned succeeds."""
        assert_signed_in(self._current_user())
        conversation_id = None
        previous = None
        for cid, pins in self._pins.items():
            if message_id in pins:
                conversation_id, previous = cid, pins.pop(message_id)
                break
        if conversation_id is not None:
            self._publish(conversation_id)

        result = await with_deadline(
            self._records.delete(Table.PINNED_MESSAGES, {"message_id": message_id}),
            self._call_timeout,
            "pinned_messages.delete",
        )
        if result.error is not None:
            if conversation_id is not None and previous is not None:
                self._pins.setdefault(conversation_id, {})[message_id] = previous
                self._publish(conversation_id)
            raise result.error

    # -- reactions and stars -------------------------------------------------

    async def toggle_reaction(self, message_id: UUID, emoji: str) -> bool:
        """Add my ``emoji`` to a message, or take it back. Returns True when added."""
        me = assert_signed_in(self._current_user())
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationError("Reaction cannot be empty")
        message = self._find(message_id)
        if message is None or message.is_deleted or _is_provisional(message):
            raise NotFoundError("Message not found")
        cid = message.conversation_id
        keys = self._reactions.setdefault(cid, {}).setdefault(message_id, set())
        key = (me.id, emoji)
        adding = key not in keys
        if adding:
            keys.add(key)
        else:
            keys.discard(key)
        self._publish(cid)

        if adding:
            result = await with_deadline(
                self._records.insert(
                    Table.MESSAGE_REACTIONS,
                    {"message_id": message_id, "conversation_id": cid, "user_id": me.id, "emoji": emoji},
                ),
                self._call_timeout,
                "message_reactions.insert",
            )
            if isinstance(result.error, ConflictError):
                result = DirectoryResult(data=None)
        else:
            result = await with_deadline(
                self._records.delete(
                    Table.MESSAGE_REACTIONS,
                    {"message_id": message_id, "user_id": me.id, "emoji": emoji},
                ),
                self._call_timeout,
                "message_reactions.delete",
            )
        if result.error is not None:
            keys = self._reactions.setdefault(cid, {}).setdefault(message_id, set())
            if adding:
                keys.discard(key)
            else:
                keys.add(key)
            self._publish(cid)
            logger.warning("Reaction %s on %s failed: %s", emoji, message_id, result.error.detail)
            raise result.error
        return adding

    async def toggle_star(self, message_id: UUID) -> bool:
        """Star a message for myself, or unstar it. Returns True when starred."""
        me = assert_signed_in(self._current_user())
        message = self._find(message_id)
        if message is None or _is_provisional(message):
            raise NotFoundError("Message not found")
        previous = self._stars.pop(message_id, None)
        starring = previous is None
        if starring:
            self._stars[message_id] = self._clock.now()
        self._publish(message.conversation_id)

        if starring:
            result = await with_deadline(
                self._records.insert(Table.STARRED_MESSAGES, {"message_id": message_id, "user_id": me.id}),
                self._call_timeout,
                "starred_messages.insert",
            )
            if isinstance(result.error, ConflictError):
                result = DirectoryResult(data=None)
        else:
            result = await with_deadline(
                self._records.delete(Table.STARRED_MESSAGES, {"message_id": message_id, "user_id": me.id}),
                self._call_timeout,
                "starred_messages.delete",
            )
        if result.error is not None:
            if starring:
                self._stars.pop(message_id, None)
            else:
                self._stars[message_id] = previous
            self._publish(message.conversation_id)
            raise result.error
        return starring

    async def starred_messages(self) -> tuple[Message, ...]:
        """My starred messages across conversations, most recently starred first."""
        me = assert_signed_in(self._current_user())
        stars = (
            await with_deadline(
                self._records.select(Table.STARRED_MESSAGES, {"user_id": me.id}, order_by=("-created_at",)),
                self._call_timeout,
                "starred_messages.select",
            )
        ).unwrap()
        self._stars = {as_uuid(row["message_id"]): row["created_at"] for row in stars}
        if not self._stars:
            return ()
        rows = (
            await with_deadline(
                self._records.select(Table.MESSAGES, {"id": list(self._stars)}),
                self._call_timeout,
                "messages.select",
            )
        ).unwrap()
        found = {message.id: message for message in map(row_to_message, rows)}
        return tuple(found[mid] for mid in self._stars if mid in found)

    # -- delivery receipts and replies ---------------------------------------

    async def mark_delivered(self, message_id: UUID) -> bool:
        """Stamp ``delivered_at`` on a message addressed to me.

        Returns False without a directory call when the message is not mine
        to acknowledge or already carries a delivery time.
        """
        me = assert_signed_in(self._current_user())
        message = self._find(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.receiver_id != me.id or message.delivered_at is not None:
            return False
        now = self._clock.now()
        log = self._logs[message.conversation_id]
        log[message_id] = replace(message, delivered_at=now)
        self._publish(message.conversation_id)

        result = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"id": message_id, "receiver_id": me.id, "delivered_at": None},
                {"delivered_at": now},
            ),
            self._call_timeout,
            "messages.update",
        )
        if result.error is not None:
            entry = log.get(message_id)
            if entry is not None and entry.delivered_at == now:
                log[message_id] = replace(entry, delivered_at=None)
                self._publish(message.conversation_id)
            raise result.error
        for row in result.data or []:
            self._upsert(row_to_message(row), record=False)
        return True

    async def reply_context(self, message_id: UUID) -> Message | None:
        """The message that ``message_id`` answers, or None when it answers nothing."""
        message = self._find(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.reply_to_id is None:
            return None
        known = self._find(message.reply_to_id)
        if known is not None:
            return known
        rows = (
            await with_deadline(
                self._records.select(Table.MESSAGES, {"id": message.reply_to_id}, limit=1),
                self._call_timeout,
                "messages.select",
            )
        ).unwrap()
        return row_to_message(rows[0]) if rows else None

    # -- clearing ------------------------------------------------------------

    async def clear(self, conversation_id: UUID) -> int:
        """Hide every delivered message of the conversation for both parties.

        Messages addressed to me are marked read first so the unread count
        drops to zero. Returns how many messages were hidden.
        """
        me = assert_signed_in(self._current_user())
        if self._conversations.get(conversation_id) is None:
            raise NotFoundError("Conversation not found")
        log = self._logs.setdefault(conversation_id, {})
        previous = {
            key: m for key, m in log.items()
            if m.delivery is DeliveryState.CONFIRMED and not m.is_deleted
        }
        for key, m in previous.items():
            log[key] = replace(m, is_deleted=True, is_read=m.is_read or m.receiver_id == me.id)
        cleared = self._conversations.clear_unread(conversation_id)
        self._publish(conversation_id)

        now = self._clock.now()
        read = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"conversation_id": conversation_id, "receiver_id": me.id, "is_read": False},
                {"is_read": True, "read_at": now},
            ),
            self._call_timeout,
            "messages.update",
        )
        if read.error is not None:
            self._undo_clear(conversation_id, previous, restore_read=True)
            self._conversations.restore_unread(conversation_id, cleared)
            raise read.error
        self._conversations.mark_ids_read(conversation_id, (as_uuid(row["id"]) for row in read.data or []))

        hidden = await with_deadline(
            self._records.update(
                Table.MESSAGES,
                {"conversation_id": conversation_id, "is_deleted": False},
                {"is_deleted": True, "deleted_at": now},
            ),
            self._call_timeout,
            "messages.update",
        )
        if hidden.error is not None:
            self._undo_clear(conversation_id, previous, restore_read=False)
            raise hidden.error
        for row in hidden.data or []:
            self._upsert(row_to_message(row))
        logger.info("Cleared %d messages in %s", len(hidden.data or []), conversation_id)
        return len(hidden.data or [])

    def _undo_clear(self, conversation_id: UUID, previous: dict[UUID, Message], *, restore_read: bool) -> None:
        log = self._logs.get(conversation_id, {})
        for key, before in previous.items():
            entry = log.get(key)
            if entry is None:
                continue
            log[key] = replace(
                entry,
                is_deleted=False,
                is_read=before.is_read if restore_read else entry.is_read,
            )
        self._publish(conversation_id)

    # -- reconciliation ------------------------------------------------------

    def _upsert(self, message: Message, *, record: bool = True) -> Message:
        """Insert or merge an authoritative message. Safe to repeat."""
        cid = message.conversation_id
        log = self._logs.setdefault(cid, {})
        existing = log.get(message.id)
        if existing is not None:
            merged = self._settle_actions(_merge(existing, message), message)
        else:
            merged = message
            correlation_id = message.client_msg_id
            if correlation_id is not None:
                entry_key = self._aliases.pop(correlation_id, correlation_id)
                optimistic = log.get(entry_key)
                if optimistic is not None and optimistic.delivery is not DeliveryState.CONFIRMED:
                    del log[entry_key]
                    self._pending.pop(entry_key, None)
                self._pending.pop(correlation_id, None)
        log[message.id] = merged
        if record:
            self._conversations.record_message(merged)
        self._publish(cid)
        return merged

    def _settle_actions(self, merged: Message, incoming: Message) -> Message:
        """Drop edit and delete actions, pending or failed, that ``incoming`` confirms."""
        settled = [
            correlation_id for correlation_id, action in self._pending.items()
            if action.message_id == incoming.id and _carries(action, incoming)
        ]
        if not settled:
            return merged
        for correlation_id in settled:
            action = self._pending.pop(correlation_id)
            logger.info("%s of %s confirmed by the directory", action.kind, incoming.id)
        return replace(merged, delivery=DeliveryState.CONFIRMED)

    def _find(self, message_id: UUID) -> Message | None:
        for log in self._logs.values():
            message = log.get(message_id)
            if message is not None:
                return message
        return None

    def _fail(self, action: PendingAction, error: AppError) -> None:
        self._pending[action.correlation_id] = replace(
            action, state=DeliveryState.FAILED, error=error.detail,
        )
        logger.warning("%s of %s failed: %s", action.kind, action.message_id, error.detail)

    def _publish(self, conversation_id: UUID) -> None:
        self._listeners.notify(
            StreamSnapshot(
                conversation_id=conversation_id,
                messages=self.messages(conversation_id),
                pins=self.pinned(conversation_id),
            )
        )

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("%s ended with %r", task.get_name(), task.exception())

    async def _load(self, conversation_id: UUID) -> None:
        history = await with_deadline(
            self._records.select(
                Table.MESSAGES, {"conversation_id": conversation_id}, order_by=("created_at", "id"),
            ),
            self._call_timeout,
            "messages.select",
        )
        for row in history.unwrap():
            self._upsert(row_to_message(row), record=False)

        pins = await with_deadline(
            self._records.select(Table.PINNED_MESSAGES, {"conversation_id": conversation_id}),
            self._call_timeout,
            "pinned_messages.select",
        )
        if pins.error is not None:
            logger.warning("Pins of %s unavailable: %s", conversation_id, pins.error.detail)
        else:
            self._pins[conversation_id] = {
                pin.message_id: pin for pin in map(row_to_pin, pins.data)
            }

        reactions = await with_deadline(
            self._records.select(Table.MESSAGE_REACTIONS, {"conversation_id": conversation_id}),
            self._call_timeout,
            "message_reactions.select",
        )
        if reactions.error is not None:
            logger.warning("Reactions of %s unavailable: %s", conversation_id, reactions.error.detail)
        else:
            by_message: dict[UUID, set[tuple[UUID, str]]] = {}
            for row in reactions.data:
                by_message.setdefault(as_uuid(row["message_id"]), set()).add(reaction_key(row))
            self._reactions[conversation_id] = by_message

        me = self._current_user()
        log = self._logs.get(conversation_id, {})
        if me is not None and log:
            stars = await with_deadline(
                self._records.select(Table.STARRED_MESSAGES, {"user_id": me.id, "message_id": list(log)}),
                self._call_timeout,
                "starred_messages.select",
            )
            if stars.error is not None:
                logger.warning("Stars in %s unavailable: %s", conversation_id, stars.error.detail)
            else:
                self._stars.update({as_uuid(row["message_id"]): row["created_at"] for row in stars.data})
        self._publish(conversation_id)

    async def _on_message_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row.get("conversation_id"))
        if cid is not None:
            self._mailbox.post(cid, lambda: self._apply_message_push(event))

    async def _apply_message_push(self, event: PushEvent) -> None:
        if event.event_type is PushEventType.DELETE:
            cid, mid = as_uuid(event.row["conversation_id"]), as_uuid(event.row.get("id"))
            self._reactions.get(cid, {}).pop(mid, None)
            self._stars.pop(mid, None)
            if self._logs.get(cid, {}).pop(mid, None) is not None:
                self._publish(cid)
            return
        self._upsert(row_to_message(event.row), record=False)

    async def _on_pin_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row.get("conversation_id"))
        if cid is not None:
            self._mailbox.post(cid, lambda: self._apply_pin_push(event))

    async def _apply_pin_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row["conversation_id"])
        pins = self._pins.setdefault(cid, {})
        if event.event_type is PushEventType.DELETE:
            pins.pop(as_uuid(event.row.get("message_id")), None)
        else:
            pin = row_to_pin(event.row)
            pins[pin.message_id] = pin
        self._publish(cid)

    async def _on_reaction_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row.get("conversation_id"))
        if cid is not None:
            self._mailbox.post(cid, lambda: self._apply_reaction_push(event))

    async def _apply_reaction_push(self, event: PushEvent) -> None:
        cid = as_uuid(event.row["conversation_id"])
        keys = self._reactions.setdefault(cid, {}).setdefault(as_uuid(event.row["message_id"]), set())
        if event.event_type is PushEventType.DELETE:
            keys.discard(reaction_key(event.row))
        else:
            keys.add(reaction_key(event.row))
        self._publish(cid)
