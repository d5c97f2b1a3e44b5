"""Local liveness heartbeat plus a TTL-demoted cache of other users' presence."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID

from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.exceptions import ConflictError
from rapport_sync.application.listeners import Listeners
from rapport_sync.application.mailbox import Mailbox
from rapport_sync.application.mappers.presence import row_to_presence
from rapport_sync.application.policies.deadlines import with_deadline
from rapport_sync.application.ports.clock import Clock, SystemClock
from rapport_sync.application.ports.directory import PushBus, RecordStore, Subscription
from rapport_sync.config import settings
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.entities.presence import PresenceRecord
from rapport_sync.domain.value_objects.enums import PushEventType, Table

logger = logging.getLogger(__name__)

_PRESENCE = "presence"


def format_last_seen(last_seen_at: datetime | None, now: datetime) -> str:
    if last_seen_at is None:
        return "Long time ago"
    minutes = int((now - last_seen_at).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} min{'s' if minutes > 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days > 1 else ''} ago"
    return "Long time ago"


class PresenceTracker:
    def __init__(
        self,
        records: RecordStore,
        push: PushBus,
        current_user: Callable[[], Identity | None],
        *,
        clock: Clock | None = None,
        heartbeat_interval: float = settings.HEARTBEAT_INTERVAL_SECONDS,
        ttl_seconds: float = settings.PRESENCE_TTL_SECONDS,
        sweep_interval: float = settings.PRESENCE_SWEEP_INTERVAL_SECONDS,
        call_timeout: float = settings.DIRECTORY_CALL_TIMEOUT,
    ) -> None:
        self._records = records
        self._push = push
        self._current_user = current_user
        self._clock = clock or SystemClock()
        self._heartbeat_interval = heartbeat_interval
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sweep_interval = sweep_interval
        self._call_timeout = call_timeout

        self._cache: dict[UUID, PresenceRecord] = {}
        self._listeners: Listeners[PresenceRecord] = Listeners("presence")
        self._mailbox = Mailbox(_PRESENCE)
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._beating_for: UUID | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._subscription: Subscription | None = None
        self._background: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        self._subscription = await self._push.subscribe(Table.PRESENCE, None, self._on_push)
        if self._sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="presence-sweep")
        logger.info("Presence tracker started (ttl=%ss)", self._ttl.total_seconds())

    async def stop(self) -> None:
        self.stop_heartbeat()
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._mailbox.close()

    # -- heartbeat -----------------------------------------------------------

    def start_heartbeat(self) -> None:
        identity = self._current_user()
        if identity is None:
            logger.debug("No signed-in user, heartbeat not started")
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._beating_for = identity.id
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"presence-heartbeat-{identity.id}",
        )
        logger.debug("Presence heartbeat started for %s", identity.id)

    def stop_heartbeat(self, *, announce_offline: bool = True) -> None:
        """Idempotent; safe to call from error paths and status listeners."""
        task, self._heartbeat_task = self._heartbeat_task, None
        user_id, self._beating_for = self._beating_for, None
        if task is None:
            return
        task.cancel()
        logger.debug("Presence heartbeat stopped for %s", user_id)
        if announce_offline and user_id is not None:
            offline = asyncio.create_task(self._announce_offline(user_id))
            self._background.add(offline)
            offline.add_done_callback(self._background.discard)

    def pause(self) -> None:
        """App went to the background: stop beating and let the TTL decide."""
        self.stop_heartbeat(announce_offline=False)

    async def resume(self) -> None:
        """App came back to the foreground: beat now and keep beating."""
        if self._current_user() is None:
            return
        await self.heartbeat()
        self.start_heartbeat()

    async def heartbeat(self) -> bool:
        """Announce local liveness once. Failures are silent apart from logging."""
        identity = self._current_user()
        if identity is None:
            return False
        now = self._clock.now()
        ok = await self._write_presence(identity.id, True, now)
        if ok:
            self._merge(PresenceRecord(user_id=identity.id, is_online=True, last_seen_at=now))
        return ok

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self.heartbeat()
            except Exception:
                logger.exception("Presence heartbeat error")
            await asyncio.sleep(self._heartbeat_interval)

    async def _announce_offline(self, user_id: UUID) -> None:
        now = self._clock.now()
        if await self._write_presence(user_id, False, now):
            self._merge(PresenceRecord(user_id=user_id, is_online=False, last_seen_at=now))

    async def _write_presence(self, user_id: UUID, online: bool, now: datetime) -> bool:
        values = {"is_online": online, "last_seen_at": now}
        result = await with_deadline(
            self._records.update(Table.PRESENCE, {"user_id": user_id}, values),
            self._call_timeout,
            "presence.update",
        )
        if result.error is None and not result.data:
            result = await with_deadline(
                self._records.insert(Table.PRESENCE, {"user_id": user_id, **values}),
                self._call_timeout,
                "presence.insert",
            )
            if isinstance(result.error, ConflictError):
                result = await with_deadline(
                    self._records.update(Table.PRESENCE, {"user_id": user_id}, values),
                    self._call_timeout,
                    "presence.update",
                )
        if result.error is not None:
            logger.debug("Presence write for %s failed: %s", user_id, result.error.detail)
            return False
        return True

    # -- cache ---------------------------------------------------------------

    def presence_of(self, user_id: UUID) -> PresenceRecord:
        record = self._cache.get(user_id)
        if record is None:
            return PresenceRecord(user_id=user_id, is_online=False, last_seen_at=None)
        if record.is_online and self._is_stale(record, self._clock.now()):
            return replace(record, is_online=False)
        return record

    async def presence_of_many(self, user_ids: Iterable[UUID]) -> dict[UUID, PresenceRecord]:
        wanted = list(dict.fromkeys(user_ids))
        missing = [uid for uid in wanted if uid not in self._cache]
        if missing:
            result = await with_deadline(
                self._records.select(Table.PRESENCE, {"user_id": missing}),
                self._call_timeout,
                "presence.select",
            )
            if result.error is not None:
                logger.debug("Presence lookup failed: %s", result.error.detail)
            else:
                for row in result.data:
                    self._merge(row_to_presence(row))
        return {uid: self.presence_of(uid) for uid in wanted}

    def subscribe(self, listener: Callable[[PresenceRecord], None]) -> Callable[[], None]:
        return self._listeners.add(listener)

    def sweep(self) -> list[PresenceRecord]:
        """Demote every online record whose heartbeat is older than the TTL."""
        now = self._clock.now()
        demoted: list[PresenceRecord] = []
        for user_id, record in list(self._cache.items()):
            if record.is_online and self._is_stale(record, now):
                offline = replace(record, is_online=False)
                self._cache[user_id] = offline
                demoted.append(offline)
        for record in demoted:
            logger.debug("Presence of %s expired", record.user_id)
            self._listeners.notify(record)
        return demoted

    def clear(self) -> None:
        self._cache.clear()

    def _is_stale(self, record: PresenceRecord, now: datetime) -> bool:
        return record.last_seen_at is None or now - record.last_seen_at > self._ttl

    def _merge(self, record: PresenceRecord) -> None:
        """Last-writer-wins by ``last_seen_at``."""
        existing = self._cache.get(record.user_id)
        if (
            existing is not None
            and existing.last_seen_at is not None
            and record.last_seen_at is not None
            and record.last_seen_at < existing.last_seen_at
        ):
            return
        self._cache[record.user_id] = record
        if record != existing:
            self._listeners.notify(self.presence_of(record.user_id))

    async def _on_push(self, event: PushEvent) -> None:
        self._mailbox.post(_PRESENCE, lambda: self._apply_push(event))

    async def _apply_push(self, event: PushEvent) -> None:
        record = row_to_presence(event.row)
        if event.event_type is PushEventType.DELETE:
            record = replace(record, is_online=False)
        self._merge(record)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Presence sweep error")
