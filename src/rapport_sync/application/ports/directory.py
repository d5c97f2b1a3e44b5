from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence
from uuid import UUID

from rapport_sync.application.dto.events import PushEvent
from rapport_sync.application.exceptions import AppError
from rapport_sync.domain.value_objects.enums import Table

# scalar -> equality, None -> IS NULL, list/tuple/set/frozenset -> IN
Filters = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class DirectoryResult:
    """Outcome of a directory call: exactly one of ``data`` / ``error`` is meaningful."""

    data: Any = None
    error: AppError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.data


class RecordStore(Protocol):
    async def select(
        self,
        table: Table,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> DirectoryResult:
        """``data`` is a list of row dicts. ``order_by`` entries use a ``-`` prefix for DESC."""
        ...

    async def insert(self, table: Table, row: Mapping[str, Any]) -> DirectoryResult:
        """``data`` is the inserted row."""
        ...

    async def update(
        self, table: Table, filters: Filters, values: Mapping[str, Any],
    ) -> DirectoryResult:
        """``data`` is the list of updated rows."""
        ...

    async def delete(self, table: Table, filters: Filters) -> DirectoryResult:
        """``data`` is the list of deleted rows."""
        ...

    async def find_or_create_conversation(self, user_a: UUID, user_b: UUID) -> DirectoryResult:
        """Atomic find-or-insert keyed by the unordered pair. ``data`` is the row."""
        ...


class Subscription(Protocol):
    async def close(self) -> None: ...


OnPushEvent = Callable[[PushEvent], Awaitable[None]]


class PushBus(Protocol):
    async def subscribe(
        self, table: Table, filters: Filters | None, on_event: OnPushEvent,
    ) -> Subscription: ...


def row_matches(row: Mapping[str, Any], filters: Filters | None) -> bool:
    """Apply the filter semantics of :class:`RecordStore` to a plain row."""
    if not filters:
        return True
    for column, expected in filters.items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected and str(actual) not in {str(v) for v in expected}:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected and str(actual) != str(expected):
            return False
    return True
