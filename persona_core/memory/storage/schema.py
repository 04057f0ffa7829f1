from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from ...errors import StorageError
from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise StorageError(
                        "SQLite memory schema version mismatch. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                await self._reset_schema(db)
            else:
                await self._create_schema(db)
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        await db.execute("DROP TABLE IF EXISTS memory_records")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS memory_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                importance REAL NOT NULL CHECK (importance >= 0.0 AND importance <= 1.0),
                embedding TEXT,
                embedding_dim INTEGER,
                source_ids TEXT NOT NULL DEFAULT '[]',
                consolidated_into TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(consolidated_into) REFERENCES memory_records(id) ON DELETE SET NULL
            );

            CREATE INDEX IF NOT EXISTS idx_memory_records_recent
            ON memory_records(user_id, persona_id, consolidated_into, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_memory_records_type
            ON memory_records(user_id, persona_id, memory_type, created_at);
            """
        )
