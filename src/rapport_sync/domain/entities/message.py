from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from rapport_sync.domain.value_objects.enums import DeliveryState, MessageKind


@dataclass(frozen=True, slots=True)
class Message:
    id: UUID
    conversation_id: UUID
    sender_id: UUID
    receiver_id: UUID
    kind: MessageKind
    body: str | None
    payload: dict[str, Any] | None
    created_at: datetime
    client_msg_id: UUID | None = None
    reply_to_id: UUID | None = None
    delivered_at: datetime | None = None
    is_read: bool = False
    is_edited: bool = False
    is_deleted: bool = False
    delivery: DeliveryState = DeliveryState.CONFIRMED

    @property
    def sort_key(self) -> tuple[datetime, UUID]:
        return self.created_at, self.id


@dataclass(frozen=True, slots=True)
class Pin:
    message_id: UUID
    conversation_id: UUID
    pinned_by: UUID
    created_at: datetime
    expires_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True, slots=True)
class ReactionCount:
    """One emoji on a message, with how many users chose it."""

    emoji: str
    count: int
    mine: bool = False
