"""SQLite schema management (code-first approach).

Each table stores one JSON document per row next to the bookkeeping columns
the repository maintains itself (id, version, timestamps).
"""

import logging

import aiosqlite


logger = logging.getLogger(__name__)


# Central list of all tables in the schema
TABLES = [
    "profiles",
    "verification_artifacts",
    "tasks",
    "time_slots",
    "bookings",
    "notifications",
    "push_tokens",
    "availability_schedules",
]

# Fields looked up often enough to deserve an expression index
INDEXED_FIELDS: dict[str, list[str]] = {
    "profiles": ["role"],
    "verification_artifacts": ["user_id"],
    "tasks": ["client_id", "provider_id", "status"],
    "time_slots": ["provider_id", "date"],
    "bookings": ["task_id", "provider_id"],
    "notifications": ["user_id"],
    "push_tokens": ["user_id"],
    "availability_schedules": ["provider_id"],
}

# Natural keys; a second insert with the same values is rejected
UNIQUE_FIELDS: dict[str, list[str]] = {
    "time_slots": ["provider_id", "date", "start_time", "end_time"],
}


def get_table_schema(table: str) -> str:
    """Return the CREATE TABLE statement for a document table."""
    return (
        f"CREATE TABLE IF NOT EXISTS {table} ("
        "id TEXT PRIMARY KEY, "
        "version INTEGER NOT NULL DEFAULT 1, "
        "created TEXT NOT NULL, "
        "updated TEXT NOT NULL, "
        "data TEXT NOT NULL DEFAULT '{}'"
        ")"
    )


def get_indexes(table: str) -> list[str]:
    """Return CREATE INDEX statements for a table's filtered fields and natural key."""
    indexes = [
        f"CREATE INDEX IF NOT EXISTS idx_{table}_{field} ON {table} (json_extract(data, '$.{field}'))"
        for field in INDEXED_FIELDS.get(table, [])
    ]
    unique = UNIQUE_FIELDS.get(table)
    if unique:
        columns = ", ".join(f"json_extract(data, '$.{field}')" for field in unique)
        indexes.append(f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_natural_key ON {table} ({columns})")
    return indexes


async def init_db(conn: aiosqlite.Connection) -> None:
    """Create every table and index if missing."""
    for table in TABLES:
        await conn.execute(get_table_schema(table))
        for index_sql in get_indexes(table):
            await conn.execute(index_sql)
    await conn.commit()
    logger.info("Database schema initialized", extra={"tables": len(TABLES)})
