"""Redis Pub/Sub change stream: publish side plus a filtering push bus."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import UUID, uuid4

import redis.asyncio as aioredis

from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.ports.directory import Filters, OnPushEvent, row_matches
from rapport_sync.domain.value_objects.enums import Table
from rapport_sync.infrastructure.bus.serializer import deserialize_change, serialize_change

logger = logging.getLogger(__name__)


class RedisChangePublisher:
    """Implements infrastructure.db.record_store.ChangePublisher."""

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def publish(self, event: PushEvent) -> None:
        await self._redis.publish(self._channel, serialize_change(event))


@dataclass(slots=True)
class _Registration:
    table: Table
    filters: Filters | None
    on_event: OnPushEvent
    id: UUID = field(default_factory=uuid4)


class _RedisSubscription:
    def __init__(self, bus: RedisPushBus, registration: _Registration) -> None:
        self._bus = bus
        self._registration = registration

    async def close(self) -> None:
        self._bus._registrations.pop(self._registration.id, None)


class RedisPushBus:
    """Implements application.ports.directory.PushBus.

    One background task listens to the change channel and hands every event to
    the registrations whose table and filters match the row.
    """

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel
        self._registrations: dict[UUID, _Registration] = {}
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._listen(), name="redis-push-bus")
        logger.info("Redis push bus started on channel=%s", self._channel)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Redis push bus stopped")
        self._registrations.clear()

    async def subscribe(
        self, table: Table, filters: Filters | None, on_event: OnPushEvent,
    ) -> _RedisSubscription:
        registration = _Registration(table=table, filters=filters, on_event=on_event)
        self._registrations[registration.id] = registration
        logger.debug("Push subscription %s on %s %s", registration.id, table, filters)
        return _RedisSubscription(self, registration)

    async def dispatch(self, event: PushEvent) -> None:
        for registration in list(self._registrations.values()):
            if registration.table != event.table or not row_matches(event.row, registration.filters):
                continue
            try:
                await registration.on_event(event)
            except Exception:
                logger.exception("Push handler failed for %s on %s", event.event_type, event.table)

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    await self.dispatch(deserialize_change(message["data"]))
                except Exception:
                    logger.exception("Error processing change message")
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()
