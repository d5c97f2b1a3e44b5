"""Directory record store on PostgreSQL.

Rows cross the port as plain dicts keyed by column name. Every committed write
is announced to the change publisher so push subscribers see it.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID

from sqlalchemy import delete, inspect, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.exceptions import ValidationError
from rapport_sync.application.mappers.conversation import ordered_pair
from rapport_sync.application.mappers.message import preview_text, row_to_message
from rapport_sync.application.ports.directory import DirectoryResult, Filters
from rapport_sync.domain.value_objects.enums import PushEventType, Table
from rapport_sync.infrastructure.db.base import Base
from rapport_sync.infrastructure.db.errors import translate_db_error
from rapport_sync.infrastructure.db.models import (
    ConversationModel,
    MessageModel,
    MessageReactionModel,
    PinnedMessageModel,
    PresenceModel,
    StarredMessageModel,
    UserModel,
)

logger = logging.getLogger(__name__)

MODELS: dict[Table, type[Base]] = {
    Table.USERS: UserModel,
    Table.CONVERSATIONS: ConversationModel,
    Table.MESSAGES: MessageModel,
    Table.PRESENCE: PresenceModel,
    Table.PINNED_MESSAGES: PinnedMessageModel,
    Table.MESSAGE_REACTIONS: MessageReactionModel,
    Table.STARRED_MESSAGES: StarredMessageModel,
}


class ChangePublisher(Protocol):
    async def publish(self, event: PushEvent) -> None: ...


def model_to_row(instance: Base) -> dict[str, Any]:
    return {attr.key: getattr(instance, attr.key) for attr in inspect(instance).mapper.column_attrs}


def _column(model: type[Base], name: str) -> Any:
    if name not in inspect(model).column_attrs:
        raise ValidationError(f"Unknown column {model.__tablename__}.{name}")
    return getattr(model, name)


def _where(model: type[Base], filters: Filters | None) -> list[Any]:
    clauses = []
    for name, expected in (filters or {}).items():
        column = _column(model, name)
        if isinstance(expected, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(expected)))
        elif expected is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == expected)
    return clauses


def _order(model: type[Base], order_by: Sequence[str]) -> list[Any]:
    ordering = []
    for key in order_by:
        column = _column(model, key.lstrip("-"))
        ordering.append(column.desc() if key.startswith("-") else column.asc())
    return ordering


class SqlAlchemyRecordStore:
    """Implements application.ports.directory.RecordStore."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        changes: ChangePublisher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._changes = changes

    async def select(
        self,
        table: Table,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> DirectoryResult:
        model = MODELS[table]
        try:
            stmt = select(model).where(*_where(model, filters)).order_by(*_order(model, order_by))
            if limit is not None:
                stmt = stmt.limit(limit)
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = [model_to_row(m) for m in result.scalars().all()]
        except ValidationError as exc:
            return DirectoryResult(error=exc)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, f"{table}.select"))
        return DirectoryResult(data=rows)

    async def insert(self, table: Table, row: Mapping[str, Any]) -> DirectoryResult:
        model = MODELS[table]
        events: list[PushEvent] = []
        try:
            for name in row:
                _column(model, name)
            async with self._session_factory() as session:
                async with session.begin():
                    if table is Table.MESSAGES:
                        created, inserted = await self._insert_message(session, row, events)
                    else:
                        stmt = pg_insert(model).values(**row).returning(model)
                        result = await session.execute(stmt)
                        created = model_to_row(result.scalar_one())
                        inserted = True
                    if inserted:
                        events.insert(0, PushEvent(event_type=PushEventType.INSERT, table=table, row=created))
        except ValidationError as exc:
            return DirectoryResult(error=exc)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, f"{table}.insert"))
        await self._announce(events)
        return DirectoryResult(data=created)

    async def update(
        self, table: Table, filters: Filters, values: Mapping[str, Any],
    ) -> DirectoryResult:
        model = MODELS[table]
        try:
            for name in values:
                _column(model, name)
            stmt = (
                update(model)
                .where(*_where(model, filters))
                .values(**values)
                .returning(model)
                .execution_options(synchronize_session=False)
            )
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    rows = [model_to_row(m) for m in result.scalars().all()]
        except ValidationError as exc:
            return DirectoryResult(error=exc)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, f"{table}.update"))
        await self._announce(
            [PushEvent(event_type=PushEventType.UPDATE, table=table, row=r) for r in rows]
        )
        return DirectoryResult(data=rows)

    async def delete(self, table: Table, filters: Filters) -> DirectoryResult:
        model = MODELS[table]
        try:
            stmt = (
                delete(model)
                .where(*_where(model, filters))
                .returning(model)
                .execution_options(synchronize_session=False)
            )
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    rows = [model_to_row(m) for m in result.scalars().all()]
        except ValidationError as exc:
            return DirectoryResult(error=exc)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, f"{table}.delete"))
        await self._announce(
            [PushEvent(event_type=PushEventType.DELETE, table=table, row=r) for r in rows]
        )
        return DirectoryResult(data=rows)

    async def find_or_create_conversation(self, user_a: UUID, user_b: UUID) -> DirectoryResult:
        """Insert the pair unless it exists; the unique pair constraint arbitrates races."""
        user1, user2 = ordered_pair(user_a, user_b)
        created = False
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = (
                        pg_insert(ConversationModel)
                        .values(user1_id=user1, user2_id=user2)
                        .on_conflict_do_nothing(constraint="uq_conversation_pair")
                        .returning(ConversationModel)
                    )
                    result = await session.execute(stmt)
                    model = result.scalar_one_or_none()
                    if model is None:
                        existing = await session.execute(
                            select(ConversationModel).where(
                                ConversationModel.user1_id == user1,
                                ConversationModel.user2_id == user2,
                            )
                        )
                        model = existing.scalar_one()
                    else:
                        created = True
                    row = model_to_row(model)
        except (SQLAlchemyError, OSError) as exc:
            return DirectoryResult(error=translate_db_error(exc, "conversations.find_or_create"))
        if created:
            logger.info("Created conversation %s for %s/%s", row["id"], user1, user2)
            await self._announce(
                [PushEvent(event_type=PushEventType.INSERT, table=Table.CONVERSATIONS, row=row)]
            )
        return DirectoryResult(data=row)

    async def _insert_message(
        self, session: AsyncSession, row: Mapping[str, Any], events: list[PushEvent],
    ) -> tuple[dict[str, Any], bool]:
        """Idempotent on ``(sender_id, client_msg_id)``; touches the conversation preview."""
        stmt = (
            pg_insert(MessageModel)
            .values(**row)
            .on_conflict_do_nothing(constraint="uq_message_idempotency")
            .returning(MessageModel)
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            existing = await session.execute(
                select(MessageModel).where(
                    MessageModel.sender_id == row["sender_id"],
                    MessageModel.client_msg_id == row["client_msg_id"],
                )
            )
            return model_to_row(existing.scalar_one()), False

        created = model_to_row(model)
        message = row_to_message(created)
        touched = await session.execute(
            update(ConversationModel)
            .where(ConversationModel.id == message.conversation_id)
            .values(last_message=preview_text(message), last_message_at=message.created_at)
            .returning(ConversationModel)
            .execution_options(synchronize_session=False)
        )
        for conversation in touched.scalars().all():
            events.append(
                PushEvent(
                    event_type=PushEventType.UPDATE,
                    table=Table.CONVERSATIONS,
                    row=model_to_row(conversation),
                )
            )
        return created, True

    async def _announce(self, events: list[PushEvent]) -> None:
        if self._changes is None:
            return
        for event in events:
            try:
                await self._changes.publish(event)
            except Exception:
                logger.exception("Failed to publish %s on %s", event.event_type, event.table)
