from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Conversation:
    id: UUID
    counterpart_id: UUID
    display_name: str
    avatar_ref: str | None
    last_message_preview: str
    last_message_at: datetime | None
    unread_count: int = 0
    is_muted: bool = False
    is_pinned: bool = False
    is_archived: bool = False
