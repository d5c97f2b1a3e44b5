from __future__ import annotations

from typing import Any, Iterable
from uuid import UUID

from rapport_sync.application.mappers._values import as_datetime, as_uuid
from rapport_sync.domain.entities.message import Message, Pin, ReactionCount
from rapport_sync.domain.value_objects.enums import DeliveryState, MessageKind


def row_to_message(row: dict[str, Any]) -> Message:
    return Message(
        id=as_uuid(row["id"]),
        conversation_id=as_uuid(row["conversation_id"]),
        sender_id=as_uuid(row["sender_id"]),
        receiver_id=as_uuid(row["receiver_id"]),
        kind=MessageKind(row.get("kind") or MessageKind.TEXT),
        body=row.get("body"),
        payload=row.get("payload"),
        created_at=as_datetime(row["created_at"]),
        client_msg_id=as_uuid(row.get("client_msg_id")),
        reply_to_id=as_uuid(row.get("reply_to_id")),
        delivered_at=as_datetime(row.get("delivered_at")),
        is_read=bool(row.get("is_read", False)),
        is_edited=bool(row.get("is_edited", False)),
        is_deleted=bool(row.get("is_deleted", False)),
        delivery=DeliveryState.CONFIRMED,
    )


def message_to_row(message: Message) -> dict[str, Any]:
    """Columns written on insert. The directory assigns ``id`` and ``created_at``."""
    return {
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "kind": message.kind.value,
        "body": message.body,
        "payload": message.payload,
        "client_msg_id": message.client_msg_id,
        "reply_to_id": message.reply_to_id,
    }


def row_to_pin(row: dict[str, Any]) -> Pin:
    return Pin(
        message_id=as_uuid(row["message_id"]),
        conversation_id=as_uuid(row["conversation_id"]),
        pinned_by=as_uuid(row["pinned_by"]),
        created_at=as_datetime(row["created_at"]),
        expires_at=as_datetime(row.get("expires_at")),
    )


_KIND_LABELS = {
    MessageKind.IMAGE: "Photo",
    MessageKind.VIDEO: "Video",
    MessageKind.VOICE: "Voice message",
    MessageKind.DOCUMENT: "File",
    MessageKind.LOCATION: "Location",
}


def preview_text(message: Message) -> str:
    """Conversation-list preview line for a message."""
    if message.body:
        return message.body
    return _KIND_LABELS.get(message.kind, "")


def reaction_key(row: dict[str, Any]) -> tuple[UUID, str]:
    return as_uuid(row["user_id"]), str(row["emoji"])


def count_reactions(keys: Iterable[tuple[UUID, str]], me: UUID | None) -> tuple[ReactionCount, ...]:
    """Group ``(user_id, emoji)`` pairs by emoji, most used first."""
    users: dict[str, set[UUID]] = {}
    for user_id, emoji in keys:
        users.setdefault(emoji, set()).add(user_id)
    counts = [ReactionCount(emoji=emoji, count=len(ids), mine=me in ids) for emoji, ids in users.items()]
    return tuple(sorted(counts, key=lambda c: (-c.count, c.emoji)))
