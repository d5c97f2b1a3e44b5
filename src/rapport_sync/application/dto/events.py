"""Push and auth event envelopes."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from rapport_sync.application.dto.auth import AuthSession
from rapport_sync.domain.value_objects.enums import AuthEventType, PushEventType, Table


class PushEvent(BaseModel):
    """Row change delivered by the directory, at least once."""

    event_type: PushEventType
    table: Table
    row: dict[str, Any] = {}


class AuthEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: AuthEventType
    session: AuthSession | None = None
