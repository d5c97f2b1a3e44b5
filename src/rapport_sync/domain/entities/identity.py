from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Identity:
    id: UUID
    email: str
    display_name: str
    role_tag: str = "regular"
    profile: dict[str, Any] | None = None
