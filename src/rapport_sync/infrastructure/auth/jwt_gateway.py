"""Auth gateway backed by the ``auth_users`` table.

Passwords are stored as bcrypt hashes; sessions are HS256 access tokens that
are refreshed silently shortly before they expire. The current token can be
kept in a file so that a restarted client resumes its session.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

import bcrypt
import jwt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rapport_sync.application.dto.auth import AuthSession, AuthUser, Credential, RegistrationPayload
from rapport_sync.application.dto.events import AuthEvent
from rapport_sync.application.exceptions import AuthError, ConflictError
from rapport_sync.application.listeners import Listeners
from rapport_sync.application.ports.auth import AuthListener
from rapport_sync.application.ports.clock import Clock, SystemClock
from rapport_sync.application.ports.directory import DirectoryResult
from rapport_sync.config import settings
from rapport_sync.domain.value_objects.enums import AuthEventType
from rapport_sync.infrastructure.db.errors import translate_db_error
from rapport_sync.infrastructure.db.models import AuthUserModel

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _auth_user(model: AuthUserModel) -> AuthUser:
    return AuthUser(id=model.id, email=model.email, metadata=dict(model.user_metadata or {}))


class JwtAuthGateway:
    """Implements application.ports.auth.AuthGateway."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        secret: str = settings.JWT_SECRET,
        algorithm: str = settings.JWT_ALGORITHM,
        token_ttl: int = settings.ACCESS_TOKEN_TTL_SECONDS,
        refresh_margin: int = settings.TOKEN_REFRESH_MARGIN_SECONDS,
        session_file: Path | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not secret:
            raise ValueError("JWT_SECRET must be configured")
        self._session_factory = session_factory
        self._secret = secret
        self._algorithm = algorithm
        self._token_ttl = timedelta(seconds=token_ttl)
        self._refresh_margin = timedelta(seconds=refresh_margin)
        self._session_file = session_file
        self._clock = clock or SystemClock()

        self._session: AuthSession | None = None
        self._listeners: Listeners[AuthEvent] = Listeners("auth")
        self._refresh_task: asyncio.Task[None] | None = None

    # -- AuthGateway ---------------------------------------------------------

    async def sign_in(self, credential: Credential) -> DirectoryResult:
        try:
            model = await self._find_by_email(credential.email)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, "auth.sign_in"))
        matches = model is not None and await asyncio.to_thread(
            check_password, credential.password, model.password_hash,
        )
        if not matches:
            return DirectoryResult(error=AuthError("Invalid login credentials"))
        session = self._open_session(_auth_user(model))
        self._emit(AuthEventType.SIGNED_IN, session)
        return DirectoryResult(data=session)

    async def sign_up(self, payload: RegistrationPayload) -> DirectoryResult:
        model = AuthUserModel(
            email=payload.email.strip().lower(),
            password_hash=await asyncio.to_thread(hash_password, payload.password),
            user_metadata=payload.metadata(),
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(model)
        except IntegrityError:
            return DirectoryResult(error=ConflictError("User already registered"))
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, "auth.sign_up"))
        logger.info("Registered auth user %s", model.id)
        session = self._open_session(_auth_user(model))
        self._emit(AuthEventType.SIGNED_IN, session)
        return DirectoryResult(data=session)

    async def sign_out(self) -> DirectoryResult:
        had_session = self._session is not None
        self._close_session()
        if had_session:
            self._emit(AuthEventType.SIGNED_OUT, None)
        return DirectoryResult(data=None)

    async def get_session(self) -> DirectoryResult:
        """The current session, restored from the session file when needed.

        ``data`` is ``None`` when there is no valid session: no token, an
        expired or tampered token, or a user that no longer exists.
        """
        token = self._session.access_token if self._session else self._read_token()
        if token is None:
            return DirectoryResult(data=None)
        claims = self._decode(token)
        if claims is None:
            self._close_session()
            return DirectoryResult(data=None)
        try:
            model = await self._find_by_id(UUID(claims["sub"]))
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, "auth.get_session"))
        if model is None:
            self._close_session()
            return DirectoryResult(data=None)
        if self._session is None:
            self._session = AuthSession(
                access_token=token,
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
                user=_auth_user(model),
            )
            self._schedule_refresh()
        return DirectoryResult(data=self._session)

    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    # -- internals -----------------------------------------------------------

    def _issue_token(self, user: AuthUser) -> tuple[str, datetime]:
        now = self._clock.now()
        expires_at = now + self._token_ttl
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm), expires_at

    def _decode(self, token: str) -> dict[str, Any] | None:
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            logger.info("Stored session expired")
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected stored token: %s", exc)
        return None

    def _open_session(self, user: AuthUser) -> AuthSession:
        token, expires_at = self._issue_token(user)
        self._session = AuthSession(access_token=token, expires_at=expires_at, user=user)
        self._write_token(token)
        self._schedule_refresh()
        return self._session

    def _close_session(self) -> None:
        self._session = None
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        if self._session_file is not None:
            self._session_file.unlink(missing_ok=True)

    def _emit(self, event_type: AuthEventType, session: AuthSession | None) -> None:
        logger.debug("Auth event %s", event_type)
        self._listeners.notify(AuthEvent(type=event_type, session=session))

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="auth-token-refresh")

    async def _refresh_loop(self) -> None:
        while self._session is not None:
            delay = (self._session.expires_at - self._refresh_margin - self._clock.now()).total_seconds()
            await asyncio.sleep(max(delay, 0.0))
            session = self._session
            if session is None:
                return
            try:
                model = await self._find_by_id(session.user.id)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("Token refresh postponed: %s", exc)
                await asyncio.sleep(self._refresh_margin.total_seconds() / 2 or 1.0)
                continue
            if model is None:
                logger.info("User %s disappeared; ending session", session.user.id)
                self._session = None
                if self._session_file is not None:
                    self._session_file.unlink(missing_ok=True)
                self._emit(AuthEventType.SIGNED_OUT, None)
                return
            token, expires_at = self._issue_token(_auth_user(model))
            self._session = AuthSession(access_token=token, expires_at=expires_at, user=_auth_user(model))
            self._write_token(token)
            self._emit(AuthEventType.TOKEN_REFRESHED, self._session)

    async def _find_by_email(self, email: str) -> AuthUserModel | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuthUserModel).where(func.lower(AuthUserModel.email) == email.strip().lower())
            )
            return result.scalar_one_or_none()

    async def _find_by_id(self, user_id: UUID) -> AuthUserModel | None:
        async with self._session_factory() as db:
            result = await db.execute(select(AuthUserModel).where(AuthUserModel.id == user_id))
            return result.scalar_one_or_none()

    def _read_token(self) -> str | None:
        if self._session_file is None or not self._session_file.exists():
            return None
        return self._session_file.read_text(encoding="utf-8").strip() or None

    def _write_token(self, token: str) -> None:
        if self._session_file is None:
            return
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        self._session_file.write_text(token, encoding="utf-8")
