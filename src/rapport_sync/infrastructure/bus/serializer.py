from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any
from uuid import UUID

from rapport_sync.application.dto.events import PushEvent


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return super().default(o)


def serialize_change(event: PushEvent) -> str:
    envelope = {
        "event": event.event_type.value,
        "data": {"table": event.table.value, "row": event.row},
    }
    return json.dumps(envelope, cls=_Encoder)


def deserialize_change(raw: str | bytes) -> PushEvent:
    """Rows come back with JSON scalars; the mappers coerce ids and timestamps."""
    envelope = json.loads(raw)
    data = envelope["data"]
    return PushEvent(event_type=envelope["event"], table=data["table"], row=data.get("row") or {})
