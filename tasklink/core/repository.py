"""Repository protocol: the persistence contract the marketplace core depends on."""

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel


class DatabaseError(RuntimeError):
    """Store-level failure (connection lost, constraint violated, bad query)."""


class RecordNotFoundError(KeyError):
    """Requested record does not exist."""


class DuplicateRecordError(DatabaseError):
    """Insert would repeat the unique key of an existing record."""


class ChangeType(StrEnum):
    """Kind of committed write delivered to subscribers."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A committed write pushed to realtime subscribers."""

    table: str
    change: ChangeType
    record: dict[str, Any]


OnChange = Callable[[ChangeEvent], Awaitable[None] | None]


class Subscription(Protocol):
    """Handle returned by Repository.subscribe."""

    def unsubscribe(self) -> None:
        """Stop receiving change events. Safe to call more than once."""
        ...


class Repository(Protocol):
    """Abstract store used for profiles, artifacts, tasks, slots, bookings, and notifications.

    Every record carries `id`, `created`, `updated`, and an integer `version`
    that the repository increments on each write.
    """

    async def get(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Return all records whose fields equal every value in `filters`."""
        ...

    async def get_one(self, table: str, record_id: str) -> dict[str, Any]:
        """Return a single record, raising RecordNotFoundError when absent."""
        ...

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record and return it with id, timestamps, and version 1."""
        ...

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Merge `patch` into a record and return the stored result."""
        ...

    async def update_if(
        self,
        table: str,
        record_id: str,
        expected: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Atomically apply `patch` only if every field in `expected` still matches.

        Returns the updated record, or None when the precondition no longer holds.
        """
        ...

    async def delete(self, table: str, record_id: str) -> None:
        """Delete a record, raising RecordNotFoundError when absent."""
        ...

    def subscribe(self, table: str, filters: dict[str, Any] | None, on_change: OnChange) -> Subscription:
        """Register a callback for committed writes matching `filters`."""
        ...


def matches_filters(record: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """Return True if every filter field equals the record's value."""
    if not filters:
        return True
    return all(record.get(field) == value for field, value in filters.items())
