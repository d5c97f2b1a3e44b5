"""Tagged session states. Only the session manager constructs transitions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from rapport_sync.domain.entities.identity import Identity


@dataclass(frozen=True, slots=True)
class SignedOut:
    pass


@dataclass(frozen=True, slots=True)
class Authenticating:
    pass


@dataclass(frozen=True, slots=True)
class SignedIn:
    identity: Identity
    # False while only the auth user is known and the profile row is still loading.
    profile_fresh: bool = False


@dataclass(frozen=True, slots=True)
class Refreshing:
    identity: Identity


SessionStatus = Union[SignedOut, Authenticating, SignedIn, Refreshing]


def identity_of(status: SessionStatus) -> Identity | None:
    if isinstance(status, (SignedIn, Refreshing)):
        return status.identity
    return None
