"""aiosqlite access for one wallet profile (``agent.db``).

WAL journal, dict rows, and an idempotent schema created on connect.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite

SCHEMA_VERSION = 1


class Database:
    """Owns the profile's single aiosqlite connection.

    Every write commits immediately; the agent never holds a transaction
    open across an await on the network.
    """

    def __init__(self, db_path: Path, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError(f"Database {self.db_path} is not connected; call connect() first.")
        return self._conn

    async def connect(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
        await self._migrate()

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Run one write and commit. The cursor exposes ``rowcount`` / ``lastrowid``."""
        conn = self._connection()
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor

    async def execute_many(self, sql: str, rows: list[tuple]) -> None:
        conn = self._connection()
        await conn.executemany(sql, rows)
        await conn.commit()

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        async with self._connection().execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._connection().execute(sql, params) as cursor:
            return [dict(r) for r in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        conn = self._connection()
        async with conn.execute("PRAGMA user_version;") as cursor:
            (version,) = await cursor.fetchone()
        if version > SCHEMA_VERSION:
            raise RuntimeError(
                f"{self.db_path} uses schema v{version}, newer than this release (v{SCHEMA_VERSION})."
            )

        await conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS scheduled_transfers (
                id TEXT PRIMARY KEY,
                schedule_id TEXT,
                user_id TEXT NOT NULL,
                recipient TEXT NOT NULL,
                recipient_name TEXT DEFAULT '',
                amount TEXT NOT NULL,
                token TEXT DEFAULT 'VCN',
                unlock_time INTEGER NOT NULL,
                creation_tx TEXT,
                status TEXT DEFAULT 'WAITING',
                hidden_from_desk INTEGER DEFAULT 0,
                retry_count INTEGER DEFAULT 0,
                next_retry_at INTEGER,
                lock_expires_at INTEGER,
                last_error TEXT,
                executed_tx TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_scheduled_status
                ON scheduled_transfers (status);

            CREATE TABLE IF NOT EXISTS bridge_tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                token TEXT DEFAULT 'VCN',
                destination_chain TEXT DEFAULT '',
                recipient TEXT,
                status TEXT DEFAULT 'PENDING',
                tx_hash TEXT,
                error TEXT,
                hidden_from_desk INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS transfer_history (
                id TEXT PRIMARY KEY,
                batch_id TEXT,
                user_id TEXT NOT NULL,
                recipient TEXT,
                recipient_name TEXT DEFAULT '',
                amount TEXT NOT NULL,
                token TEXT DEFAULT 'VCN',
                intent TEXT DEFAULT 'send',
                success INTEGER NOT NULL,
                tx_hash TEXT,
                error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT DEFAULT '',
                name TEXT NOT NULL,
                address TEXT NOT NULL,
                internal_name TEXT,
                alias TEXT,
                email TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                data_json TEXT DEFAULT '{}',
                priority TEXT DEFAULT 'normal',
                read INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        await conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")
        await conn.commit()


def get_database(profile_dir: Path) -> Database:
    """``profile_dir/agent.db``, not yet connected."""
    return Database(Path(profile_dir) / "agent.db")
