from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from rapport_sync.domain.value_objects.enums import ActionKind, DeliveryState


@dataclass(frozen=True, slots=True)
class PendingAction:
    """An optimistic mutation awaiting directory confirmation."""

    correlation_id: UUID
    kind: ActionKind
    conversation_id: UUID
    created_at: datetime
    message_id: UUID | None = None
    state: DeliveryState = DeliveryState.PENDING
    # Arguments needed to re-issue the action on retry.
    args: dict[str, Any] | None = None
    error: str | None = None
