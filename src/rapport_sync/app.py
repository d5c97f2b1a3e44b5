"""Composition root: wires the engine components to a directory and to each other."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator
from uuid import UUID

import redis.asyncio as aioredis

from rapport_sync.application.exceptions import AppError
from rapport_sync.application.mailbox import Mailbox
from rapport_sync.application.ports.auth import AuthGateway
from rapport_sync.application.ports.clock import Clock
from rapport_sync.application.ports.directory import PushBus, RecordStore
from rapport_sync.application.ports.storage import ObjectStorage
from rapport_sync.config import settings
from rapport_sync.domain.entities.session_status import SessionStatus, identity_of
from rapport_sync.infrastructure.auth.jwt_gateway import JwtAuthGateway
from rapport_sync.infrastructure.bus.redis_pubsub import RedisChangePublisher, RedisPushBus
from rapport_sync.infrastructure.db.record_store import SqlAlchemyRecordStore
from rapport_sync.infrastructure.db.session import create_engine, create_session_factory
from rapport_sync.services.conversation_store import ConversationStore
from rapport_sync.services.message_stream import MessageStream
from rapport_sync.services.presence_tracker import PresenceTracker
from rapport_sync.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

_ENGINE = "engine"


class EngineClient:
    """The four engine components, driven by the session status.

    Signing in starts the presence heartbeat and attaches the conversation
    store; signing out stops the heartbeat and drops all per-user state.
    """

    def __init__(
        self,
        auth: AuthGateway,
        records: RecordStore,
        push: PushBus,
        *,
        storage: ObjectStorage | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.session = SessionManager(auth, records, clock=clock)
        self.presence = PresenceTracker(records, push, self.session.current_user, clock=clock)
        self.conversations = ConversationStore(records, push, self.session.current_user)
        self.messages = MessageStream(
            records, push, self.session.current_user, self.conversations,
            storage=storage, clock=clock,
        )
        self._mailbox = Mailbox(_ENGINE)
        self._attached: UUID | None = None
        self._unsubscribe = None

    async def start(self) -> None:
        self._unsubscribe = self.session.on_status_change(self._on_status)
        await self.presence.start()
        await self.session.start()
        # a restored session may already be resolved before the listener fired
        self._on_status(self.session.current_status())
        await self.settle()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._mailbox.close()
        await self._detach()
        await self.presence.stop()
        await self.session.stop()

    async def settle(self) -> None:
        """Wait until every component has drained its queued work."""
        await self.session.settle()
        await self._mailbox.join()
        await self.conversations.settle()
        await self.messages.settle()

    def _on_status(self, status: SessionStatus) -> None:
        self._mailbox.post(_ENGINE, lambda: self._follow(status))

    async def _follow(self, status: SessionStatus) -> None:
        identity = identity_of(status)
        if identity is None:
            if self._attached is not None:
                await self._detach()
            return
        if identity.id == self._attached:
            return
        if self._attached is not None:
            await self._detach()
        self._attached = identity.id
        logger.info("Attaching engine to %s", identity.id)
        self.presence.start_heartbeat()
        try:
            await self.conversations.start()
        except AppError as exc:
            logger.warning("Conversation list not loaded: %s", exc.detail)

    async def _detach(self) -> None:
        if self._attached is None:
            return
        logger.info("Detaching engine from %s", self._attached)
        self._attached = None
        self.presence.stop_heartbeat()
        self.presence.clear()
        await self.messages.stop()
        await self.conversations.stop()


@dataclass(slots=True)
class Directory:
    records: SqlAlchemyRecordStore
    push: RedisPushBus
    auth: JwtAuthGateway


@asynccontextmanager
async def connect_directory(session_file: Path | None = None) -> AsyncIterator[Directory]:
    """Open the database pool, the Redis change stream and the auth gateway."""
    engine = create_engine()
    session_factory = create_session_factory(engine)
    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    logger.info("Redis connection pool created")

    push = RedisPushBus(redis, settings.REDIS_CHANGES_CHANNEL)
    await push.start()
    records = SqlAlchemyRecordStore(
        session_factory, RedisChangePublisher(redis, settings.REDIS_CHANGES_CHANNEL),
    )
    auth = JwtAuthGateway(session_factory, session_file=session_file)
    try:
        yield Directory(records=records, push=push, auth=auth)
    finally:
        await auth.close()
        await push.stop()
        await redis.aclose()
        await engine.dispose()
        logger.info("Directory connections closed")
