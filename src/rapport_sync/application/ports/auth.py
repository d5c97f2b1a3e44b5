from __future__ import annotations

from typing import Callable, Protocol

from rapport_sync.application.dto.auth import Credential, RegistrationPayload
from rapport_sync.application.dto.events import AuthEvent
from rapport_sync.application.ports.directory import DirectoryResult

AuthListener = Callable[[AuthEvent], None]


class AuthGateway(Protocol):
    async def sign_in(self, credential: Credential) -> DirectoryResult:
        """``data`` is an :class:`AuthSession`."""
        ...

    async def sign_up(self, payload: RegistrationPayload) -> DirectoryResult:
        """``data`` is an :class:`AuthSession`."""
        ...

    async def sign_out(self) -> DirectoryResult: ...

    async def get_session(self) -> DirectoryResult:
        """``data`` is the current :class:`AuthSession` or ``None``."""
        ...

    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        """Register a lifecycle listener; returns the unsubscribe callable."""
        ...
