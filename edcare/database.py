from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import urlparse

import aiosqlite

from edcare.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL

try:  # Optional: only required when DATABASE_URL points at Postgres
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        await self.conn.execute(query, params or ())

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # SQLite-style ? placeholders -> asyncpg $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.execute(q, *(params or ()))

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits outside explicit transactions
        return

    async def close(self) -> None:
        await self.pool.close()


_db: DatabaseAdapter | None = None


async def _connect_sqlite(path: str) -> SQLiteAdapter:
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    logger.info("Connected to SQLite database at %s", path)
    return SQLiteAdapter(conn)


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL and not DATABASE_URL.startswith("sqlite"):
            if asyncpg is None:
                raise RuntimeError(
                    "DATABASE_URL is set but asyncpg is not installed. "
                    "Install asyncpg or unset DATABASE_URL."
                )
            pool = await asyncpg.create_pool(
                dsn=DATABASE_URL,
                min_size=1,
                max_size=DATABASE_MAX_CONNECTIONS,
            )
            _db = PostgresAdapter(pool)
            logger.info("Connected to Postgres database")
        elif DATABASE_URL:
            _db = await _connect_sqlite(_sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH)
        else:
            _db = await _connect_sqlite(DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db keeps the absolute path
    if url.startswith("sqlite:////"):
        return path
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS dose_events (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        medication TEXT NOT NULL,
        scheduled_time TEXT NOT NULL,
        taken INTEGER NOT NULL,
        recorded_at TEXT NOT NULL,
        fhir_statement_id TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_dose_events_patient ON dose_events (patient_id, recorded_at)",
]

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS dose_events (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        medication TEXT NOT NULL,
        scheduled_time TEXT NOT NULL,
        taken INTEGER NOT NULL,
        recorded_at TEXT NOT NULL,
        fhir_statement_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_dose_events_patient ON dose_events (patient_id, recorded_at);",
]


async def init_db() -> None:
    db = await get_db()
    schema = SQLITE_SCHEMA if db.engine == "sqlite" else POSTGRES_SCHEMA
    for stmt in schema:
        await db.execute(stmt)
    await db.commit()


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None
