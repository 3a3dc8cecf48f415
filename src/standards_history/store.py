"""Persistence boundary for standards, activity logs and activity history.

``HistoryStore`` is the protocol the engine depends on. ``PostgresHistoryStore``
implements it over a psycopg async connection opened with ``autocommit=True``:
every statement is its own transaction, and history writes are idempotent
merge upserts keyed by the deterministic document id, so no explicit locking
is needed.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

logger = logging.getLogger(__name__)

_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS standards (
        user_id TEXT NOT NULL,
        id TEXT NOT NULL,
        data JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        user_id TEXT NOT NULL,
        id TEXT NOT NULL,
        standard_id TEXT NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        occurred_at_ms BIGINT NOT NULL,
        note TEXT,
        edited_at_ms BIGINT,
        deleted_at_ms BIGINT,
        created_at_ms BIGINT NOT NULL,
        updated_at_ms BIGINT NOT NULL,
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS activity_logs_standard_occurred_idx
        ON activity_logs (user_id, standard_id, occurred_at_ms)
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_history (
        user_id TEXT NOT NULL,
        id TEXT NOT NULL,
        activity_id TEXT NOT NULL,
        standard_id TEXT NOT NULL,
        period_start_ms BIGINT NOT NULL,
        data JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS activity_history_standard_period_idx
        ON activity_history (user_id, standard_id, period_start_ms DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS activity_history_activity_period_idx
        ON activity_history (user_id, activity_id, period_start_ms DESC)
    """,
)

_LOG_COLUMNS = (
    "id, standard_id, value, occurred_at_ms, note, edited_at_ms, deleted_at_ms"
)
_UPDATABLE_LOG_FIELDS: frozenset[str] = frozenset(
    {"value", "occurred_at_ms", "note", "edited_at_ms"}
)


class HistoryStore(Protocol):
    """User-scoped document operations the engine consumes."""

    async def list_standards(self, user_id: str) -> list[dict[str, Any]]: ...

    async def get_standard(
        self, user_id: str, standard_id: str
    ) -> dict[str, Any] | None: ...

    async def query_logs(
        self, user_id: str, standard_id: str, start_ms: int, end_ms: int
    ) -> list[dict[str, Any]]: ...

    async def get_log(
        self, user_id: str, log_entry_id: str
    ) -> dict[str, Any] | None: ...

    async def insert_log(self, user_id: str, log: dict[str, Any], now_ms: int) -> None: ...

    async def update_log(
        self, user_id: str, log_entry_id: str, fields: dict[str, Any], now_ms: int
    ) -> None: ...

    async def set_log_deleted(
        self, user_id: str, log_entry_id: str, deleted_at_ms: int | None, now_ms: int
    ) -> None: ...

    async def get_history(
        self, user_id: str, doc_id: str
    ) -> dict[str, Any] | None: ...

    async def get_latest_history(
        self, user_id: str, standard_id: str
    ) -> tuple[str, dict[str, Any]] | None: ...

    async def list_history_for_activity(
        self, user_id: str, activity_id: str
    ) -> list[tuple[str, dict[str, Any]]]: ...

    async def upsert_history(
        self, user_id: str, doc_id: str, document: dict[str, Any]
    ) -> None: ...


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    """Create the user-scoped tables if they do not exist yet."""
    async with conn.cursor() as cur:
        for statement in _SCHEMA_STATEMENTS:
            await cur.execute(statement)
    logger.info("Activity history schema ensured (%d statements)", len(_SCHEMA_STATEMENTS))


class PostgresHistoryStore:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def list_standards(self, user_id: str) -> list[dict[str, Any]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT data
                FROM standards
                WHERE user_id = %s
                ORDER BY id
                """,
                (user_id,),
            )
            rows = await cur.fetchall()
        return [row["data"] for row in rows]

    async def get_standard(
        self, user_id: str, standard_id: str
    ) -> dict[str, Any] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT data FROM standards WHERE user_id = %s AND id = %s",
                (user_id, standard_id),
            )
            row = await cur.fetchone()
        return row["data"] if row else None

    async def query_logs(
        self, user_id: str, standard_id: str, start_ms: int, end_ms: int
    ) -> list[dict[str, Any]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT {_LOG_COLUMNS}
                FROM activity_logs
                WHERE user_id = %s
                  AND standard_id = %s
                  AND occurred_at_ms >= %s
                  AND occurred_at_ms < %s
                ORDER BY occurred_at_ms ASC
                """,
                (user_id, standard_id, start_ms, end_ms),
            )
            return await cur.fetchall()

    async def get_log(
        self, user_id: str, log_entry_id: str
    ) -> dict[str, Any] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"SELECT {_LOG_COLUMNS} FROM activity_logs WHERE user_id = %s AND id = %s",
                (user_id, log_entry_id),
            )
            return await cur.fetchone()

    async def insert_log(self, user_id: str, log: dict[str, Any], now_ms: int) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO activity_logs (
                    user_id, id, standard_id, value, occurred_at_ms, note,
                    edited_at_ms, deleted_at_ms, created_at_ms, updated_at_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, NULL, NULL, %s, %s)
                ON CONFLICT (user_id, id) DO NOTHING
                """,
                (
                    user_id,
                    log["id"],
                    log["standard_id"],
                    log["value"],
                    log["occurred_at_ms"],
                    log.get("note"),
                    now_ms,
                    now_ms,
                ),
            )

    async def update_log(
        self, user_id: str, log_entry_id: str, fields: dict[str, Any], now_ms: int
    ) -> None:
        unknown = set(fields) - _UPDATABLE_LOG_FIELDS
        if unknown:
            raise ValueError(f"Unsupported activity log fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = %s" for column in fields)
        async with self.conn.cursor() as cur:
            await cur.execute(
                f"""
                UPDATE activity_logs
                SET {assignments}, updated_at_ms = %s
                WHERE user_id = %s AND id = %s
                """,
                (*fields.values(), now_ms, user_id, log_entry_id),
            )

    async def set_log_deleted(
        self, user_id: str, log_entry_id: str, deleted_at_ms: int | None, now_ms: int
    ) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE activity_logs
                SET deleted_at_ms = %s, updated_at_ms = %s
                WHERE user_id = %s AND id = %s
                """,
                (deleted_at_ms, now_ms, user_id, log_entry_id),
            )

    async def get_history(
        self, user_id: str, doc_id: str
    ) -> dict[str, Any] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT data FROM activity_history WHERE user_id = %s AND id = %s",
                (user_id, doc_id),
            )
            row = await cur.fetchone()
        return row["data"] if row else None

    async def get_latest_history(
        self, user_id: str, standard_id: str
    ) -> tuple[str, dict[str, Any]] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, data
                FROM activity_history
                WHERE user_id = %s
                  AND standard_id = %s
                ORDER BY period_start_ms DESC
                LIMIT 1
                """,
                (user_id, standard_id),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return row["id"], row["data"]

    async def list_history_for_activity(
        self, user_id: str, activity_id: str
    ) -> list[tuple[str, dict[str, Any]]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, data
                FROM activity_history
                WHERE user_id = %s
                  AND activity_id = %s
                ORDER BY period_start_ms DESC
                """,
                (user_id, activity_id),
            )
            rows = await cur.fetchall()
        return [(row["id"], row["data"]) for row in rows]

    async def upsert_history(
        self, user_id: str, doc_id: str, document: dict[str, Any]
    ) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO activity_history (
                    user_id, id, activity_id, standard_id, period_start_ms, data, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (user_id, id) DO UPDATE SET
                    data = activity_history.data || EXCLUDED.data,
                    updated_at = NOW()
                """,
                (
                    user_id,
                    doc_id,
                    document["activityId"],
                    document["standardId"],
                    document["periodStartMs"],
                    Json(document),
                ),
            )
