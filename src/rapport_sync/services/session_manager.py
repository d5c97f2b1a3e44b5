"""Single owner of the current identity.

Identity can change because of explicit calls (login, register, logout), auth
lifecycle events pushed by the directory, periodic health checks and the app
regaining visibility. Explicit calls win: while one is in flight, pushed events
are held back and replayed afterwards as advisory input, confirmed against the
directory before they may contradict the settled state. Background work is
serialized through the session mailbox and tagged with the session epoch, so a
result that arrives after a newer transition is discarded.
"""
from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from rapport_sync.application.dto.auth import AuthSession, AuthUser, Credential, RegistrationPayload
from rapport_sync.application.dto.events import AuthEvent
from rapport_sync.application.exceptions import AppError, AuthError, ConflictError, ValidationError
from rapport_sync.application.listeners import Listeners
from rapport_sync.application.mailbox import Mailbox
from rapport_sync.application.policies.deadlines import with_deadline
from rapport_sync.application.ports.auth import AuthGateway
from rapport_sync.application.ports.clock import Clock, SystemClock
from rapport_sync.application.ports.directory import RecordStore
from rapport_sync.config import settings
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.entities.session_status import (
    Authenticating,
    Refreshing,
    SessionStatus,
    SignedIn,
    SignedOut,
    identity_of,
)
from rapport_sync.domain.value_objects.enums import AuthEventType, Table

logger = logging.getLogger(__name__)

_SESSION = "session"
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
DEFAULT_ROLE = "regular"


def basic_identity(user: AuthUser) -> Identity:
    """Identity built from the auth user alone, without a profile round trip."""
    meta = user.metadata or {}
    return Identity(
        id=user.id,
        email=user.email,
        display_name=meta.get("name") or user.email.split("@")[0],
        role_tag=meta.get("user_type") or DEFAULT_ROLE,
    )


def identity_from_profile(user: AuthUser, row: dict[str, Any]) -> Identity:
    basic = basic_identity(user)
    profile = {k: v for k, v in row.items() if k not in ("id", "email")}
    return Identity(
        id=user.id,
        email=row.get("email") or user.email,
        display_name=row.get("name") or basic.display_name,
        role_tag=row.get("user_type") or basic.role_tag,
        profile=profile,
    )


def profile_row(user: AuthUser, defaults: dict[str, Any] | None, now: datetime) -> dict[str, Any]:
    basic = basic_identity(user)
    row: dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "name": basic.display_name,
        "user_type": basic.role_tag,
        "created_at": now,
        "updated_at": now,
    }
    for key, value in (defaults or {}).items():
        if value is not None:
            row[key] = value
    return row


def _validate_email(email: str) -> None:
    if not email or not _EMAIL_RE.match(email):
        raise ValidationError("Please enter a valid email address")


def validate_credential(credential: Credential) -> None:
    _validate_email(credential.email)
    if not credential.password:
        raise ValidationError("Password is required")


def validate_registration(payload: RegistrationPayload) -> None:
    _validate_email(payload.email)
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not payload.name.strip():
        raise ValidationError("Name is required")
    if payload.partner_email:
        _validate_email(payload.partner_email)


class SessionManager:
    def __init__(
        self,
        auth: AuthGateway,
        records: RecordStore,
        *,
        clock: Clock | None = None,
        call_timeout: float = settings.DIRECTORY_CALL_TIMEOUT,
        profile_timeout: float = settings.PROFILE_FETCH_TIMEOUT,
        health_check_interval: float = settings.HEALTH_CHECK_INTERVAL_SECONDS,
    ) -> None:
        self._auth = auth
        self._records = records
        self._clock = clock or SystemClock()
        self._call_timeout = call_timeout
        self._profile_timeout = profile_timeout
        self._health_check_interval = health_check_interval

        self._status: SessionStatus = SignedOut()
        self._listeners: Listeners[SessionStatus] = Listeners("session")
        self._mailbox = Mailbox(_SESSION)
        self._explicit_lock = asyncio.Lock()
        self._in_flight = False
        self._deferred: list[AuthEvent] = []
        # Bumped on every identity transition; background results carry the
        # epoch they started in and are dropped if it moved on.
        self._epoch = 0
        # Set when the profile read failed; sticky until the next sign-in.
        self._degraded = False
        self._health_task: asyncio.Task[None] | None = None
        self._unsubscribe_auth: Callable[[], None] | None = None

    # -- read side ---------------------------------------------------------

    def current_status(self) -> SessionStatus:
        return self._status

    def current_user(self) -> Identity | None:
        return identity_of(self._status)

    def on_status_change(self, listener: Callable[[SessionStatus], None]) -> Callable[[], None]:
        return self._listeners.add(listener)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Listen to auth events, restore a stored session and start health checks."""
        self._unsubscribe_auth = self._auth.on_auth_event(self._on_auth_event)
        await self._mailbox.post(_SESSION, self._restore_session)
        if self._health_check_interval > 0:
            self._health_task = asyncio.create_task(
                self._health_loop(), name="session-health-check",
            )
        logger.info("Session manager started")

    async def stop(self) -> None:
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        await self._mailbox.close()
        logger.info("Session manager stopped")

    async def settle(self) -> None:
        """Wait for queued background work (profile loads, replayed events)."""
        await self._mailbox.join()

    # -- explicit calls ----------------------------------------------------

    async def login(self, credential: Credential) -> Identity:
        validate_credential(credential)
        async with self._explicit_call():
            previous = self._status
            self._transition(Authenticating())
            result = await with_deadline(
                self._auth.sign_in(credential), self._call_timeout, "auth.sign_in",
            )
            if result.error is not None:
                logger.info("Login failed for %s: %s", credential.email, result.error.detail)
                self._settle_failure(previous, result.error)
                raise result.error
            session: AuthSession = result.data
            logger.info("Login succeeded for user %s", session.user.id)
            return self._begin_signed_in(session.user)

    async def register(self, payload: RegistrationPayload) -> Identity:
        validate_registration(payload)
        async with self._explicit_call():
            previous = self._status
            self._transition(Authenticating())
            result = await with_deadline(
                self._auth.sign_up(payload), self._call_timeout, "auth.sign_up",
            )
            if result.error is not None:
                logger.info("Registration failed for %s: %s", payload.email, result.error.detail)
                self._settle_failure(previous, result.error)
                raise result.error
            session: AuthSession = result.data
            logger.info("Registered user %s", session.user.id)
            return self._begin_signed_in(session.user, defaults=payload.metadata())

    async def logout(self) -> None:
        """Clear local state first, then tell the directory. Remote failures are only logged."""
        async with self._explicit_call():
            identity = self.current_user()
            self._sign_out_locally()
            result = await with_deadline(
                self._auth.sign_out(), self._call_timeout, "auth.sign_out",
            )
            if result.error is not None:
                logger.warning(
                    "Directory sign-out failed for %s: %s",
                    identity.id if identity else None,
                    result.error.detail,
                )

    async def refresh_profile(self) -> Identity | None:
        """Re-read the profile row of the current identity."""
        return await self._mailbox.post(_SESSION, self._refresh_profile)

    # -- background triggers -----------------------------------------------

    async def health_check(self) -> None:
        if self._in_flight:
            logger.debug("Health check skipped: explicit session call in flight")
            return
        await self._mailbox.post(_SESSION, self._check_session)

    async def visibility_regained(self) -> None:
        logger.debug("App visible again, checking session")
        await self.health_check()

    # -- internals -----------------------------------------------------------

    @asynccontextmanager
    async def _explicit_call(self) -> AsyncIterator[None]:
        async with self._explicit_lock:
            self._in_flight = True
            self._epoch += 1
            try:
                yield
            finally:
                self._in_flight = False
                self._replay_deferred()

    def _transition(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        logger.debug("Session %s -> %s", type(self._status).__name__, type(status).__name__)
        self._status = status
        self._listeners.notify(status)

    def _settle_failure(self, previous: SessionStatus, error: AppError) -> None:
        if isinstance(error, AuthError):
            self._transition(SignedOut())
        elif isinstance(previous, Refreshing):
            self._transition(SignedIn(previous.identity, profile_fresh=not self._degraded))
        else:
            # Network trouble or a rejected registration: keep what we knew.
            self._transition(previous)

    def _begin_signed_in(
        self, user: AuthUser, defaults: dict[str, Any] | None = None,
    ) -> Identity:
        self._epoch += 1
        self._degraded = False
        identity = basic_identity(user)
        self._transition(SignedIn(identity, profile_fresh=False))
        epoch = self._epoch
        self._mailbox.post(_SESSION, lambda: self._load_profile(user, epoch, defaults))
        return identity

    def _sign_out_locally(self) -> None:
        self._epoch += 1
        self._degraded = False
        self._transition(SignedOut())

    async def _load_profile(
        self, user: AuthUser, epoch: int, defaults: dict[str, Any] | None,
    ) -> None:
        if epoch != self._epoch:
            return
        identity = await self._ensure_profile(user, defaults)
        if epoch != self._epoch:
            logger.debug("Discarding late profile for %s", user.id)
            return
        if identity is None:
            self._degraded = True
            logger.warning(
                "Profile for %s unavailable; continuing with basic identity", user.id,
            )
            return
        self._transition(SignedIn(identity, profile_fresh=True))

    async def _ensure_profile(
        self, user: AuthUser, defaults: dict[str, Any] | None,
    ) -> Identity | None:
        """Read the profile row, creating it when missing. ``None`` on any failure."""
        result = await with_deadline(
            self._records.select(Table.USERS, {"id": user.id}, limit=1),
            self._profile_timeout,
            "users.select",
        )
        if result.error is not None:
            logger.warning("Profile read for %s failed: %s", user.id, result.error.detail)
            return None
        if result.data:
            return identity_from_profile(user, result.data[0])

        logger.info("No profile row for %s, creating it", user.id)
        result = await with_deadline(
            self._records.insert(Table.USERS, profile_row(user, defaults, self._clock.now())),
            self._profile_timeout,
            "users.insert",
        )
        if isinstance(result.error, ConflictError):
            # Created concurrently by another client.
            result = await with_deadline(
                self._records.select(Table.USERS, {"id": user.id}, limit=1),
                self._profile_timeout,
                "users.select",
            )
            if result.error is None and result.data:
                return identity_from_profile(user, result.data[0])
            return None
        if result.error is not None:
            logger.warning("Profile creation for %s failed: %s", user.id, result.error.detail)
            return None
        return identity_from_profile(user, result.data)

    async def _refresh_profile(self) -> Identity | None:
        status = self._status
        if not isinstance(status, SignedIn):
            return None
        epoch = self._epoch
        current = status.identity
        user = AuthUser(id=current.id, email=current.email)
        identity = await self._ensure_profile(user, None)
        if epoch != self._epoch or identity is None:
            return None
        self._degraded = False
        self._transition(SignedIn(identity, profile_fresh=True))
        return identity

    async def _restore_session(self) -> None:
        result = await with_deadline(
            self._auth.get_session(), self._call_timeout, "auth.get_session",
        )
        if result.error is not None:
            logger.warning("Could not restore session: %s", result.error.detail)
            return
        session: AuthSession | None = result.data
        if session is None or self.current_user() is not None or self._in_flight:
            return
        logger.info("Restored stored session for %s", session.user.id)
        self._begin_signed_in(session.user)

    async def _check_session(self) -> None:
        if self._in_flight:
            return
        epoch = self._epoch
        previous = self._status
        identity = identity_of(previous)
        if isinstance(previous, SignedIn):
            self._transition(Refreshing(previous.identity))

        result = await with_deadline(
            self._auth.get_session(), self._call_timeout, "auth.get_session",
        )
        if epoch != self._epoch or self._in_flight:
            logger.debug("Health check result superseded")
            return
        if result.error is not None:
            logger.warning("Session health check failed: %s; keeping last known state", result.error.detail)
            self._transition(previous)
            return

        session: AuthSession | None = result.data
        if session is None:
            if identity is not None:
                logger.info("Session for %s is no longer valid", identity.id)
                self._sign_out_locally()
            return
        if identity is None or session.user.id != identity.id:
            self._begin_signed_in(session.user)
            return
        if self._degraded:
            self._transition(previous)
            return

        refreshed = await self._ensure_profile(session.user, None)
        if epoch != self._epoch:
            return
        if refreshed is None:
            self._transition(previous)
        else:
            self._transition(SignedIn(refreshed, profile_fresh=True))

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_check_interval)
            try:
                await self.health_check()
            except Exception:
                logger.exception("Session health check loop error")

    def _on_auth_event(self, event: AuthEvent) -> None:
        if self._in_flight:
            logger.debug("Deferring %s event until the explicit call settles", event.type)
            self._deferred.append(event)
            return
        self._mailbox.post(_SESSION, lambda: self._apply_auth_event(event))

    def _replay_deferred(self) -> None:
        events, self._deferred = self._deferred, []
        for event in events:
            self._mailbox.post(_SESSION, lambda event=event: self._apply_auth_event(event))

    async def _apply_auth_event(self, event: AuthEvent) -> None:
        """Treat a pushed auth event as a hint, confirming it before it may change identity."""
        epoch = self._epoch
        current = self.current_user()
        claimed = event.session.user if event.session is not None else None
        if event.type is AuthEventType.SIGNED_OUT:
            claimed = None
        elif event.type is AuthEventType.INITIAL_SESSION and claimed is None:
            return

        current_id = current.id if current else None
        claimed_id = claimed.id if claimed else None
        if claimed_id == current_id:
            if event.type is AuthEventType.USER_UPDATED and current is not None:
                await self._refresh_profile()
            return

        result = await with_deadline(
            self._auth.get_session(), self._call_timeout, "auth.get_session",
        )
        if epoch != self._epoch or self._in_flight:
            logger.debug("Dropping %s event: superseded by a newer transition", event.type)
            return
        if result.error is not None:
            logger.warning(
                "Could not confirm %s event (%s); keeping last known state",
                event.type, result.error.detail,
            )
            return

        session: AuthSession | None = result.data
        actual_id = session.user.id if session is not None else None
        if actual_id == current_id:
            logger.info("Discarding stale %s event", event.type)
            return
        if session is None:
            logger.info("Directory reports no session; signing out locally")
            self._sign_out_locally()
        else:
            self._begin_signed_in(session.user)
