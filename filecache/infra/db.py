"""
Database infrastructure with SQLite and async support.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

import aiosqlite


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS file_addresses (
    uri TEXT PRIMARY KEY,
    url TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cache_statuses (
    uri TEXT PRIMARY KEY,
    resource_uri TEXT NOT NULL UNIQUE REFERENCES file_addresses(uri),
    label TEXT NOT NULL,
    http_status INTEGER,
    times_tried INTEGER NOT NULL DEFAULT 0,
    initiated_at TEXT NOT NULL,
    uuid TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS file_data_objects (
    uri TEXT PRIMARY KEY,
    uuid TEXT NOT NULL,
    name TEXT NOT NULL,
    format TEXT NOT NULL,
    size INTEGER NOT NULL,
    extension TEXT NOT NULL,
    created TEXT NOT NULL,
    data_source TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_statuses_label
ON cache_statuses(label);

CREATE INDEX IF NOT EXISTS idx_file_data_objects_source
ON file_data_objects(data_source);
"""


class Database:
    """Async SQLite database wrapper.

    One connection in autocommit mode is shared by every pipeline; explicit
    transactions are serialised with a lock so that concurrent tasks never
    interleave inside one.
    """

    def __init__(self, db_path: Union[str, Path] = "filecache.db"):
        self.db_path = Path(db_path)
        self._handle: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._handle is not None

    async def connect(self) -> None:
        """Open the connection (once) and create the schema."""
        if self.connected:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        # WAL lets readers proceed while a pipeline writes
        for pragma in ("journal_mode=WAL", "busy_timeout=30000"):
            await conn.execute(f"PRAGMA {pragma};")
        self._handle = conn
        await self._create_schema()

    async def close(self) -> None:
        conn, self._handle = self._handle, None
        if conn is not None:
            await conn.close()

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _conn(self) -> aiosqlite.Connection:
        if self._handle is None:
            await self.connect()
        return self._handle

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """``BEGIN`` ... ``COMMIT``, rolled back if the block raises."""
        conn = await self._conn()
        async with self._lock:
            await conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    # Plain statements take the transaction lock too, so they never run
    # inside (or observe) another task's open transaction.
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        conn = await self._conn()
        async with self._lock:
            return await conn.execute(sql, tuple(params))

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        conn = await self._conn()
        async with self._lock:
            async with await conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        conn = await self._conn()
        async with self._lock:
            async with await conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())

    @staticmethod
    def upsert_sql(table: str, columns: Sequence[str], key: Sequence[str]) -> str:
        """``INSERT ... ON CONFLICT(key)`` overwriting the non-key columns."""
        placeholders = ", ".join("?" for _ in columns)
        updates = [f"{col} = excluded.{col}" for col in columns if col not in key]
        on_conflict = (
            f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        )
        return (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(key)}) {on_conflict}"
        )

    async def insert_or_update(
        self, table: str, row: Dict[str, Any], key: Sequence[str]
    ) -> None:
        """Insert ``row``; on a key conflict overwrite the non-key columns."""
        await self.execute(self.upsert_sql(table, list(row), key), tuple(row.values()))

    async def _create_schema(self) -> None:
        """Create the cache tables if they do not exist yet."""
        await self._handle.executescript(SCHEMA)
        logger.debug(f"Schema ready in {self.db_path}")
