"""Shared test fixtures: in-memory fakes of every directory port."""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence
from uuid import UUID

import pytest

from rapport_sync.application.dto.auth import AuthSession, AuthUser, Credential, RegistrationPayload
from rapport_sync.application.dto.events import AuthEvent, PushEvent
from rapport_sync.application.exceptions import AppError, AuthError, ConflictError, NetworkError
from rapport_sync.application.mappers.conversation import ordered_pair
from rapport_sync.application.mappers.message import preview_text, row_to_message
from rapport_sync.application.ports.auth import AuthListener
from rapport_sync.application.ports.directory import DirectoryResult, Filters, OnPushEvent, row_matches
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.value_objects.enums import AuthEventType, PushEventType, Table

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class _Controls:
    """Per-operation failure injection and gating shared by the fakes."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self._failures: dict[tuple[str, Any], list[AppError]] = {}
        self._holds: dict[tuple[str, Any], asyncio.Event] = {}

    def fail(self, op: str, target: Any = None, error: AppError | None = None, times: int = 1) -> None:
        self._failures.setdefault((op, target), []).extend(
            [error or NetworkError(f"{op} failed")] * times
        )

    def hold(self, op: str, target: Any = None) -> asyncio.Event:
        """Block matching calls until the returned event is set."""
        gate = asyncio.Event()
        self._holds[(op, target)] = gate
        return gate

    def count(self, op: str, target: Any = None) -> int:
        return sum(1 for name, t in self.calls if name == op and (target is None or t == target))

    async def _enter(self, op: str, target: Any = None) -> AppError | None:
        self.calls.append((op, target))
        await asyncio.sleep(0)
        for key in ((op, target), (op, None)):
            gate = self._holds.get(key)
            if gate is not None:
                await gate.wait()
            failures = self._failures.get(key)
            if failures:
                return failures.pop(0)
        return None


class FakeSubscription:
    def __init__(self, bus: FakePushBus, key: int) -> None:
        self._bus = bus
        self._key = key
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        self._bus.registrations.pop(self._key, None)


class FakePushBus:
    def __init__(self) -> None:
        self.registrations: dict[int, tuple[Table, Filters | None, OnPushEvent]] = {}
        self.published: list[PushEvent] = []
        self._next = 0

    async def subscribe(self, table: Table, filters: Filters | None, on_event: OnPushEvent) -> FakeSubscription:
        self._next += 1
        self.registrations[self._next] = (table, filters, on_event)
        return FakeSubscription(self, self._next)

    def subscribers(self, table: Table) -> int:
        return sum(1 for t, _f, _h in self.registrations.values() if t == table)

    async def publish(self, event: PushEvent) -> None:
        self.published.append(event)
        for table, filters, on_event in list(self.registrations.values()):
            if table == event.table and row_matches(event.row, filters):
                await on_event(event)

    async def deliver(self, table: Table, row: Mapping[str, Any], event_type: PushEventType = PushEventType.INSERT) -> None:
        await self.publish(PushEvent(event_type=event_type, table=table, row=dict(row)))


_UNIQUE: dict[Table, tuple[tuple[str, ...], ...]] = {
    Table.USERS: (("id",), ("email",)),
    Table.CONVERSATIONS: (("id",), ("user1_id", "user2_id")),
    Table.MESSAGES: (("id",),),
    Table.PRESENCE: (("user_id",),),
    Table.PINNED_MESSAGES: (("id",), ("message_id",)),
    Table.MESSAGE_REACTIONS: (("id",), ("message_id", "user_id", "emoji")),
    Table.STARRED_MESSAGES: (("id",), ("message_id", "user_id")),
}


class FakeRecordStore(_Controls):
    """In-memory directory tables with the same write side effects as the real store."""

    def __init__(self, clock: FakeClock, bus: FakePushBus | None = None) -> None:
        super().__init__()
        self.clock = clock
        self.bus = bus
        self.tables: dict[Table, list[dict[str, Any]]] = {table: [] for table in Table}
        self._seq = 0

    def _timestamp(self) -> datetime:
        self._seq += 1
        return self.clock.now() + timedelta(microseconds=self._seq)

    def _defaults(self, table: Table) -> dict[str, Any]:
        now = self._timestamp()
        if table is Table.USERS:
            return {"name": None, "avatar_url": None, "user_type": "regular", "created_at": now, "updated_at": now}
        if table is Table.CONVERSATIONS:
            return {
                "id": uuid.uuid4(),
                "last_message": None,
                "last_message_at": None,
                "user1_muted": False, "user1_pinned": False, "user1_archived": False,
                "user2_muted": False, "user2_pinned": False, "user2_archived": False,
                "created_at": now,
                "updated_at": now,
            }
        if table is Table.MESSAGES:
            return {
                "id": uuid.uuid4(),
                "kind": "text",
                "body": None,
                "payload": None,
                "client_msg_id": None,
                "reply_to_id": None,
                "delivered_at": None,
                "is_read": False,
                "read_at": None,
                "is_edited": False,
                "is_deleted": False,
                "created_at": now,
            }
        if table is Table.PINNED_MESSAGES:
            return {"id": uuid.uuid4(), "expires_at": None, "created_at": now}
        if table in (Table.MESSAGE_REACTIONS, Table.STARRED_MESSAGES):
            return {"id": uuid.uuid4(), "created_at": now}
        return {}

    def seed(self, table: Table, **values: Any) -> dict[str, Any]:
        """Insert a row directly, without change events."""
        row = {**self._defaults(table), **values}
        self.tables[table].append(row)
        return dict(row)

    def rows(self, table: Table, **filters: Any) -> list[dict[str, Any]]:
        return [dict(r) for r in self.tables[table] if row_matches(r, filters)]

    def _conflicts(self, table: Table, row: Mapping[str, Any]) -> bool:
        for key in _UNIQUE[table]:
            if any(k not in row or row[k] is None for k in key):
                continue
            if any(all(existing.get(k) == row[k] for k in key) for existing in self.tables[table]):
                return True
        return False

    async def _publish(self, events: list[PushEvent]) -> None:
        if self.bus is None:
            return
        for event in events:
            await self.bus.publish(event)

    async def select(
        self,
        table: Table,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> DirectoryResult:
        error = await self._enter("select", table)
        if error is not None:
            return DirectoryResult(error=error)
        rows = [dict(r) for r in self.tables[table] if row_matches(r, filters)]
        for key in reversed(order_by):
            column = key.lstrip("-")
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or 0), reverse=key.startswith("-"))
        if limit is not None:
            rows = rows[:limit]
        return DirectoryResult(data=rows)

    async def insert(self, table: Table, row: Mapping[str, Any]) -> DirectoryResult:
        error = await self._enter("insert", table)
        if error is not None:
            return DirectoryResult(error=error)
        created = {**self._defaults(table), **row}
        events: list[PushEvent] = []
        if table is Table.MESSAGES and created.get("client_msg_id") is not None:
            for existing in self.tables[table]:
                if (
                    existing["sender_id"] == created["sender_id"]
                    and existing.get("client_msg_id") == created["client_msg_id"]
                ):
                    return DirectoryResult(data=dict(existing))
        if self._conflicts(table, created):
            return DirectoryResult(error=ConflictError(f"duplicate {table}"))
        self.tables[table].append(created)
        events.append(PushEvent(event_type=PushEventType.INSERT, table=table, row=dict(created)))
        if table is Table.MESSAGES:
            message = row_to_message(created)
            for conversation in self.tables[Table.CONVERSATIONS]:
                if conversation["id"] == message.conversation_id:
                    conversation["last_message"] = preview_text(message)
                    conversation["last_message_at"] = message.created_at
                    events.append(
                        PushEvent(event_type=PushEventType.UPDATE, table=Table.CONVERSATIONS, row=dict(conversation))
                    )
        await self._publish(events)
        return DirectoryResult(data=dict(created))

    async def update(self, table: Table, filters: Filters, values: Mapping[str, Any]) -> DirectoryResult:
        error = await self._enter("update", table)
        if error is not None:
            return DirectoryResult(error=error)
        updated = []
        for row in self.tables[table]:
            if row_matches(row, filters):
                row.update(values)
                updated.append(dict(row))
        await self._publish([PushEvent(event_type=PushEventType.UPDATE, table=table, row=r) for r in updated])
        return DirectoryResult(data=updated)

    async def delete(self, table: Table, filters: Filters) -> DirectoryResult:
        error = await self._enter("delete", table)
        if error is not None:
            return DirectoryResult(error=error)
        removed = [dict(r) for r in self.tables[table] if row_matches(r, filters)]
        self.tables[table] = [r for r in self.tables[table] if not row_matches(r, filters)]
        await self._publish([PushEvent(event_type=PushEventType.DELETE, table=table, row=r) for r in removed])
        return DirectoryResult(data=removed)

    async def find_or_create_conversation(self, user_a: UUID, user_b: UUID) -> DirectoryResult:
        error = await self._enter("find_or_create", Table.CONVERSATIONS)
        if error is not None:
            return DirectoryResult(error=error)
        user1, user2 = ordered_pair(user_a, user_b)
        for row in self.tables[Table.CONVERSATIONS]:
            if row["user1_id"] == user1 and row["user2_id"] == user2:
                return DirectoryResult(data=dict(row))
        created = {**self._defaults(Table.CONVERSATIONS), "user1_id": user1, "user2_id": user2}
        self.tables[Table.CONVERSATIONS].append(created)
        await self._publish([PushEvent(event_type=PushEventType.INSERT, table=Table.CONVERSATIONS, row=dict(created))])
        return DirectoryResult(data=dict(created))


def make_session(user: AuthUser, clock: FakeClock | None = None) -> AuthSession:
    now = clock.now() if clock else T0
    return AuthSession(
        access_token=f"token-{user.id}",
        expires_at=now + timedelta(hours=1),
        user=user,
    )


class FakeAuthGateway(_Controls):
    def __init__(self, accounts: dict[str, tuple[str, AuthUser]] | None = None) -> None:
        super().__init__()
        self.accounts = accounts if accounts is not None else {}
        self.session: AuthSession | None = None
        self._listeners: list[AuthListener] = []

    def add_account(self, email: str, password: str, **metadata: Any) -> AuthUser:
        user = AuthUser(id=uuid.uuid4(), email=email, metadata=metadata)
        self.accounts[email] = (password, user)
        return user

    def emit(self, event_type: AuthEventType, session: AuthSession | None = None) -> None:
        for listener in list(self._listeners):
            listener(AuthEvent(type=event_type, session=session))

    async def sign_in(self, credential: Credential) -> DirectoryResult:
        error = await self._enter("sign_in")
        if error is not None:
            return DirectoryResult(error=error)
        account = self.accounts.get(credential.email)
        if account is None or account[0] != credential.password:
            return DirectoryResult(error=AuthError("Invalid login credentials"))
        self.session = make_session(account[1])
        self.emit(AuthEventType.SIGNED_IN, self.session)
        return DirectoryResult(data=self.session)

    async def sign_up(self, payload: RegistrationPayload) -> DirectoryResult:
        error = await self._enter("sign_up")
        if error is not None:
            return DirectoryResult(error=error)
        if payload.email in self.accounts:
            return DirectoryResult(error=ConflictError("User already registered"))
        user = AuthUser(id=uuid.uuid4(), email=payload.email, metadata=payload.metadata())
        self.accounts[payload.email] = (payload.password, user)
        self.session = make_session(user)
        self.emit(AuthEventType.SIGNED_IN, self.session)
        return DirectoryResult(data=self.session)

    async def sign_out(self) -> DirectoryResult:
        error = await self._enter("sign_out")
        if error is not None:
            return DirectoryResult(error=error)
        self.session = None
        self.emit(AuthEventType.SIGNED_OUT)
        return DirectoryResult(data=None)

    async def get_session(self) -> DirectoryResult:
        error = await self._enter("get_session")
        if error is not None:
            return DirectoryResult(error=error)
        return DirectoryResult(data=self.session)

    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None


class FakeObjectStorage(_Controls):
    def __init__(self) -> None:
        super().__init__()
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, path: str, data: bytes, content_type: str) -> DirectoryResult:
        error = await self._enter("upload")
        if error is not None:
            return DirectoryResult(error=error)
        self.objects[path] = (data, content_type)
        return DirectoryResult(data=f"https://storage.test/{path}")


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until ``predicate`` holds, yielding to background tasks in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_identity(name: str = "Me", user_id: UUID | None = None) -> Identity:
    return Identity(
        id=user_id or uuid.uuid4(),
        email=f"{name.lower()}@example.com",
        display_name=name,
    )


def seed_user(records: FakeRecordStore, identity: Identity, **extra: Any) -> dict[str, Any]:
    return records.seed(
        Table.USERS, id=identity.id, email=identity.email, name=identity.display_name, **extra,
    )


def seed_conversation(records: FakeRecordStore, a: UUID, b: UUID, **extra: Any) -> dict[str, Any]:
    user1, user2 = ordered_pair(a, b)
    return records.seed(Table.CONVERSATIONS, user1_id=user1, user2_id=user2, **extra)


def seed_message(
    records: FakeRecordStore,
    conversation_id: UUID,
    sender: UUID,
    receiver: UUID,
    body: str = "hello",
    **extra: Any,
) -> dict[str, Any]:
    return records.seed(
        Table.MESSAGES,
        conversation_id=conversation_id,
        sender_id=sender,
        receiver_id=receiver,
        body=body,
        **extra,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> FakePushBus:
    return FakePushBus()


@pytest.fixture
def records(clock, bus) -> FakeRecordStore:
    return FakeRecordStore(clock, bus)


@pytest.fixture
def auth() -> FakeAuthGateway:
    return FakeAuthGateway()


@pytest.fixture
def storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def me() -> Identity:
    return make_identity("Me")


@pytest.fixture
def alice() -> Identity:
    return make_identity("Alice")


@pytest.fixture
def bob() -> Identity:
    return make_identity("Bob")
