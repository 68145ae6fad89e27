"""SQLite repository with CRUD, conditional updates, and a realtime change feed."""

import asyncio
import json
import logging
import re
import uuid
from datetime import UTC, date, datetime, time
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from tasklink.core import schema
from tasklink.core.config import settings
from tasklink.core.realtime import ChangeFeed, FeedSubscription
from tasklink.core.repository import ChangeType, DatabaseError, DuplicateRecordError, OnChange, RecordNotFoundError


logger = logging.getLogger(__name__)

__all__ = ["DatabaseError", "DuplicateRecordError", "RecordNotFoundError", "SQLiteRepository"]

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_BOOKKEEPING_FIELDS = {"id", "version", "created", "updated"}


def _validate_table_name(table: str) -> None:
    """Validate that a table is part of the schema."""
    if table not in schema.TABLES:
        msg = f"Invalid table name: {table}. Known tables: {', '.join(schema.TABLES)}"
        raise ValueError(msg)


def _validate_field_name(field: str) -> None:
    """Validate that a field name contains only alphanumeric characters and underscores."""
    if not _IDENTIFIER.match(field):
        msg = f"Invalid field name: {field}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


def _json_default(value: Any) -> Any:
    """Serialize values json.dumps doesn't handle natively."""
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _row_to_record(row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert an (id, version, created, updated, data) row into a flat record."""
    record_id, version, created, updated, data = row
    record = json.loads(data)
    record.update({"id": record_id, "version": version, "created": created, "updated": updated})
    return record


def _split_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop bookkeeping fields from a caller-supplied payload."""
    return {key: value for key, value in payload.items() if key not in _BOOKKEEPING_FIELDS}


def build_where(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """Build a WHERE clause (without the keyword) matching JSON fields by equality."""
    if not filters:
        return "", []

    conditions = []
    params: list[Any] = []
    for field, value in filters.items():
        if field == "id":
            conditions.append("id = ?")
            params.append(value)
            continue
        _validate_field_name(field)
        if value is None:
            conditions.append(f"json_extract(data, '$.{field}') IS NULL")
        elif isinstance(value, dict | list):
            msg = f"Unsupported filter value for {field}: {type(value).__name__}"
            raise ValueError(msg)
        else:
            conditions.append(f"json_extract(data, '$.{field}') = ?")
            params.append(value.value if isinstance(value, Enum) else value)
    return " AND ".join(conditions), params


def build_json_set(patch: dict[str, Any]) -> tuple[str, list[Any]]:
    """Build a json_set() expression replacing each patched field."""
    parts = ["data"]
    params: list[Any] = []
    for field, value in patch.items():
        _validate_field_name(field)
        parts.append(f"'$.{field}', json(?)")
        params.append(_dumps(value))
    return f"json_set({', '.join(parts)})", params


class SQLiteRepository:
    """Repository backed by a single aiosqlite connection.

    Writes are committed before subscribers are notified, so a push always
    reflects stored state.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = Path(db_path or settings.sqlite_db_path)
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._feed = ChangeFeed()

    async def connect(self) -> aiosqlite.Connection:
        """Open the connection and initialise the schema on first use."""
        if self._conn is not None:
            return self._conn

        async with self._lock:
            if self._conn is not None:
                return self._conn

            if str(self._db_path) != ":memory:":
                self._db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = await aiosqlite.connect(str(self._db_path))
            await conn.execute("PRAGMA journal_mode = WAL")
            await schema.init_db(conn)
            self._conn = conn

            logger.info("Opened SQLite connection", extra={"db_path": str(self._db_path)})
            return conn

    async def close(self) -> None:
        """Close the connection if open."""
        if self._conn is None:
            return
        try:
            await self._conn.close()
            logger.info("Closed SQLite connection", extra={"db_path": str(self._db_path)})
        except Exception as e:
            logger.warning("Error closing SQLite connection", extra={"error": str(e)})
        finally:
            self._conn = None

    async def get(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """List records whose fields equal every filter value, oldest first."""
        try:
            _validate_table_name(table)
            conn = await self.connect()

            where_clause, params = build_where(filters)
            where_sql = f"WHERE {where_clause}" if where_clause else ""
            query = f"SELECT id, version, created, updated, data FROM {table} {where_sql} ORDER BY created, id"  # noqa: S608 - table and fields are validated

            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

            records = [_row_to_record(row) for row in rows]
            logger.debug("Listed records", extra={"table": table, "count": len(records)})
            return records
        except ValueError:
            raise
        except Exception as e:
            logger.error("get_failed", extra={"table": table, "error": str(e)})
            msg = f"Failed to list records from {table}: {e}"
            raise DatabaseError(msg) from e

    async def get_one(self, table: str, record_id: str) -> dict[str, Any]:
        """Fetch a single record by ID, raising RecordNotFoundError if not found."""
        try:
            _validate_table_name(table)
            conn = await self.connect()

            query = f"SELECT id, version, created, updated, data FROM {table} WHERE id = ?"  # noqa: S608 - table is validated
            cursor = await conn.execute(query, (record_id,))
            row = await cursor.fetchone()

            if row is None:
                msg = f"Record not found in {table}: {record_id}"
                raise RecordNotFoundError(msg)

            return _row_to_record(row)
        except (RecordNotFoundError, ValueError):
            raise
        except Exception as e:
            logger.error("get_one_failed", extra={"table": table, "record_id": record_id, "error": str(e)})
            msg = f"Failed to get record from {table}: {e}"
            raise DatabaseError(msg) from e

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a new record and return it with its assigned id."""
        try:
            _validate_table_name(table)
            conn = await self.connect()

            record_id = str(record.get("id") or uuid.uuid4().hex)
            now = _now()
            data = _split_payload(record)

            query = f"INSERT INTO {table} (id, version, created, updated, data) VALUES (?, 1, ?, ?, ?)"  # noqa: S608 - table is validated
            await conn.execute(query, (record_id, now, now, _dumps(data)))
            await conn.commit()
        except ValueError:
            raise
        except aiosqlite.IntegrityError as e:
            logger.warning("insert_duplicate", extra={"table": table, "error": str(e)})
            msg = f"Duplicate record in {table}: {e}"
            raise DuplicateRecordError(msg) from e
        except Exception as e:
            logger.error("insert_failed", extra={"table": table, "error": str(e)})
            msg = f"Failed to create record in {table}: {e}"
            raise DatabaseError(msg) from e

        stored = {**json.loads(_dumps(data)), "id": record_id, "version": 1, "created": now, "updated": now}
        logger.info("Created record", extra={"table": table, "record_id": record_id})
        await self._feed.publish(table, ChangeType.INSERT, stored)
        return stored

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Update a record by ID and return the updated record."""
        updated = await self._conditional_update(table, record_id, None, patch)
        if updated is None:
            msg = f"Record not found in {table}: {record_id}"
            raise RecordNotFoundError(msg)
        return updated

    async def update_if(
        self,
        table: str,
        record_id: str,
        expected: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply `patch` in a single statement guarded by `expected`; None if the guard fails."""
        return await self._conditional_update(table, record_id, expected, patch)

    async def _conditional_update(
        self,
        table: str,
        record_id: str,
        expected: dict[str, Any] | None,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        data = _split_payload(patch)
        if not data:
            msg = "Empty update payload"
            raise ValueError(msg)

        try:
            _validate_table_name(table)
            conn = await self.connect()

            set_expr, set_params = build_json_set(data)
            guard_clause, guard_params = build_where(expected)
            where_sql = "id = ?" + (f" AND {guard_clause}" if guard_clause else "")

            query = (
                f"UPDATE {table} SET data = {set_expr}, version = version + 1, updated = ? "  # noqa: S608 - table and fields are validated
                f"WHERE {where_sql} RETURNING id, version, created, updated, data"
            )
            cursor = await conn.execute(query, [*set_params, _now(), record_id, *guard_params])
            rows = await cursor.fetchall()
            await conn.commit()
            row = rows[0] if rows else None
        except ValueError:
            raise
        except Exception as e:
            logger.error("update_failed", extra={"table": table, "record_id": record_id, "error": str(e)})
            msg = f"Failed to update record in {table}: {e}"
            raise DatabaseError(msg) from e

        if row is None:
            if expected is not None:
                logger.info(
                    "Conditional update rejected",
                    extra={"table": table, "record_id": record_id, "expected": expected},
                )
            return None

        record = _row_to_record(row)
        logger.info("Updated record", extra={"table": table, "record_id": record_id, "version": record["version"]})
        await self._feed.publish(table, ChangeType.UPDATE, record)
        return record

    async def delete(self, table: str, record_id: str) -> None:
        """Delete a record by ID, raising RecordNotFoundError if not found."""
        try:
            _validate_table_name(table)
            conn = await self.connect()

            query = f"DELETE FROM {table} WHERE id = ? RETURNING id, version, created, updated, data"  # noqa: S608 - table is validated
            cursor = await conn.execute(query, (record_id,))
            rows = await cursor.fetchall()
            await conn.commit()
            row = rows[0] if rows else None
        except ValueError:
            raise
        except Exception as e:
            logger.error("delete_failed", extra={"table": table, "record_id": record_id, "error": str(e)})
            msg = f"Failed to delete record from {table}: {e}"
            raise DatabaseError(msg) from e

        if row is None:
            msg = f"Record not found in {table}: {record_id}"
            raise RecordNotFoundError(msg)

        logger.info("Deleted record", extra={"table": table, "record_id": record_id})
        await self._feed.publish(table, ChangeType.DELETE, _row_to_record(row))

    def subscribe(self, table: str, filters: dict[str, Any] | None, on_change: OnChange) -> FeedSubscription:
        """Register a callback for committed writes on `table` matching `filters`."""
        _validate_table_name(table)
        return self._feed.add(table, filters, on_change)
