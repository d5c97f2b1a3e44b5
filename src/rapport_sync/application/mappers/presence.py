from __future__ import annotations

from typing import Any

from rapport_sync.application.mappers._values import as_datetime, as_uuid
from rapport_sync.domain.entities.presence import PresenceRecord


def row_to_presence(row: dict[str, Any]) -> PresenceRecord:
    return PresenceRecord(
        user_id=as_uuid(row["user_id"]),
        is_online=bool(row.get("is_online", False)),
        last_seen_at=as_datetime(row.get("last_seen_at")),
    )
