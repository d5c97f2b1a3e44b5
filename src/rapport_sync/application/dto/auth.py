from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Credential:
    email: str
    password: str


@dataclass(frozen=True, slots=True)
class RegistrationPayload:
    email: str
    password: str
    name: str
    relationship_status: str | None = None
    anniversary_date: date | None = None
    partner_email: str | None = None

    def metadata(self) -> dict[str, Any]:
        """Profile fields stored alongside the auth user."""
        return {
            "name": self.name,
            "relationship_status": self.relationship_status,
            "anniversary_date": self.anniversary_date.isoformat() if self.anniversary_date else None,
            "partner_email": self.partner_email,
        }


@dataclass(frozen=True, slots=True)
class AuthUser:
    """User as known to the auth gateway, before any profile read."""

    id: UUID
    email: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AuthSession:
    access_token: str
    expires_at: datetime
    user: AuthUser
    refresh_token: str | None = None
