"""Pure Python in-memory repository for unit testing."""

import asyncio
import copy
import itertools
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from tasklink.core import schema
from tasklink.core.realtime import ChangeFeed, FeedSubscription
from tasklink.core.repository import (
    ChangeType,
    DatabaseError,
    DuplicateRecordError,
    OnChange,
    RecordNotFoundError,
    matches_filters,
)


def _normalize(value: Any) -> Any:
    """Store values the way the JSON-backed repository returns them."""
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_normalize(v) for v in value]
    if isinstance(value, set | frozenset):
        return sorted(_normalize(v) for v in value)
    if isinstance(value, Enum):
        return value.value
    return value


class InMemoryRepository:
    """In-memory implementation of the Repository protocol.

    Every call yields to the event loop once so concurrent operations
    interleave the way they do against a real store. Failures can be
    injected per (operation, table) with `fail_next`.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._ids = itertools.count(1000)
        self._feed = ChangeFeed()
        self._failures: dict[tuple[str, str], int] = {}
        self.calls: list[tuple[str, str]] = []

    def fail_next(self, operation: str, table: str, times: int = 1) -> None:
        """Make the next `times` calls of `operation` on `table` raise DatabaseError."""
        self._failures[(operation, table)] = times

    async def _enter(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        await asyncio.sleep(0)
        remaining = self._failures.get((operation, table), 0)
        if remaining:
            self._failures[(operation, table)] = remaining - 1
            raise DatabaseError(f"Simulated {operation} failure on {table}")

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def seed(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record synchronously without publishing a change event."""
        record_id = str(record.get("id") or next(self._ids))
        now = self._now()
        stored = {**_normalize(record), "id": record_id, "version": 1, "created": now, "updated": now}
        self._table(table)[record_id] = stored
        return copy.deepcopy(stored)

    def peek(self, table: str, record_id: str) -> dict[str, Any]:
        """Read a record synchronously (test assertions only)."""
        return copy.deepcopy(self._table(table)[record_id])

    def all(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._table(table).values()]

    async def get(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._enter("get", table)
        wanted = _normalize(filters) if filters else None
        return [copy.deepcopy(r) for r in self._table(table).values() if matches_filters(r, wanted)]

    async def get_one(self, table: str, record_id: str) -> dict[str, Any]:
        await self._enter("get_one", table)
        if record_id not in self._table(table):
            raise RecordNotFoundError(f"Record not found in {table}: {record_id}")
        return copy.deepcopy(self._table(table)[record_id])

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        await self._enter("insert", table)
        unique = schema.UNIQUE_FIELDS.get(table)
        if unique:
            key = {field: _normalize(record.get(field)) for field in unique}
            if any(matches_filters(r, key) for r in self._table(table).values()):
                raise DuplicateRecordError(f"Duplicate record in {table}: {key}")
        stored = self.seed(table, record)
        await self._feed.publish(table, ChangeType.INSERT, stored)
        return stored

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update", table)
        if record_id not in self._table(table):
            raise RecordNotFoundError(f"Record not found in {table}: {record_id}")
        return await self._write(table, record_id, patch)

    async def update_if(
        self,
        table: str,
        record_id: str,
        expected: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        await self._enter("update_if", table)
        record = self._table(table).get(record_id)
        if record is None or not matches_filters(record, _normalize(expected)):
            return None
        return await self._write(table, record_id, patch)

    async def _write(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        # Check and write happen without an await in between
        record = self._table(table)[record_id]
        bookkeeping = {"id", "version", "created", "updated"}
        record.update({k: _normalize(v) for k, v in patch.items() if k not in bookkeeping})
        record["version"] += 1
        record["updated"] = self._now()
        stored = copy.deepcopy(record)
        await self._feed.publish(table, ChangeType.UPDATE, stored)
        return stored

    async def delete(self, table: str, record_id: str) -> None:
        await self._enter("delete", table)
        record = self._table(table).pop(record_id, None)
        if record is None:
            raise RecordNotFoundError(f"Record not found in {table}: {record_id}")
        await self._feed.publish(table, ChangeType.DELETE, record)

    def subscribe(self, table: str, filters: dict[str, Any] | None, on_change: OnChange) -> FeedSubscription:
        return self._feed.add(table, filters, on_change)

    @property
    def subscriber_count(self) -> int:
        return self._feed.subscriber_count
