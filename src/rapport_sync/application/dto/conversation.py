from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ConversationSettings:
    """Partial settings update; ``None`` fields are left untouched."""

    mute: bool | None = None
    pin: bool | None = None
    archive: bool | None = None

    def is_empty(self) -> bool:
        return self.mute is None and self.pin is None and self.archive is None

    def to_columns(self, prefix: str) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if self.mute is not None:
            values[f"{prefix}muted"] = self.mute
        if self.pin is not None:
            values[f"{prefix}pinned"] = self.pin
        if self.archive is not None:
            values[f"{prefix}archived"] = self.archive
        return values
