"""Conversation rows store both participants' settings side by side.

``user1_id`` is always the smaller id of the pair; ``user1_*`` / ``user2_*``
columns hold each participant's own mute/pin/archive flags.
"""
from __future__ import annotations

from typing import Any
from uuid import UUID

from rapport_sync.application.mappers._values import as_datetime, as_uuid
from rapport_sync.domain.entities.conversation import Conversation

AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def ordered_pair(user_a: UUID, user_b: UUID) -> tuple[UUID, UUID]:
    return (user_a, user_b) if str(user_a) <= str(user_b) else (user_b, user_a)


def column_prefix(row: dict[str, Any], me: UUID) -> str:
    return "user1_" if as_uuid(row["user1_id"]) == me else "user2_"


def counterpart_of(row: dict[str, Any], me: UUID) -> UUID:
    user1 = as_uuid(row["user1_id"])
    return as_uuid(row["user2_id"]) if user1 == me else user1


def display_fields(user: dict[str, Any] | None) -> tuple[str, str | None]:
    """Display name and avatar for a counterpart profile row."""
    if not user:
        return "Unknown User", None
    name = user.get("name") or user.get("email") or "Unknown User"
    avatar = user.get("avatar_url")
    if not avatar and user.get("email"):
        avatar = AVATAR_URL.format(seed=user["email"])
    return name, avatar


def row_to_conversation(
    row: dict[str, Any],
    me: UUID,
    *,
    counterpart: dict[str, Any] | None = None,
    unread_count: int = 0,
) -> Conversation:
    prefix = column_prefix(row, me)
    name, avatar = display_fields(counterpart)
    return Conversation(
        id=as_uuid(row["id"]),
        counterpart_id=counterpart_of(row, me),
        display_name=name,
        avatar_ref=avatar,
        last_message_preview=row.get("last_message") or "",
        last_message_at=as_datetime(row.get("last_message_at")),
        unread_count=unread_count,
        is_muted=bool(row.get(f"{prefix}muted", False)),
        is_pinned=bool(row.get(f"{prefix}pinned", False)),
        is_archived=bool(row.get(f"{prefix}archived", False)),
    )
