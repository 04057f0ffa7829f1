from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Sequence, Tuple

import asyncpg

from ..errors import StorageError
from ..models import MemoryRecord, MemoryType
from .storage.utils import cosine_similarity

logger = logging.getLogger("persona_core")

_COLUMNS = (
    "id, user_id, persona_id, content, memory_type, importance, embedding, "
    "source_ids, consolidated_into, created_at"
)


def _row_to_record(row: "asyncpg.Record") -> MemoryRecord:
    embedding = row["embedding"]
    return MemoryRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        persona_id=str(row["persona_id"]),
        content=str(row["content"]),
        memory_type=MemoryType(str(row["memory_type"])),
        importance=float(row["importance"]),
        embedding=[float(value) for value in embedding] if embedding is not None else None,
        source_ids=[str(item) for item in (row["source_ids"] or [])],
        consolidated_into=row["consolidated_into"],
        created_at=row["created_at"],
    )


class PostgresMemoryStore:
    """Postgres-backed memory store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=6,
                    command_timeout=30.0,
                )
            except (asyncpg.PostgresError, OSError) as exc:
                raise StorageError(f"Postgres memory store unreachable: {exc}") from exc
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator["asyncpg.Connection"]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self._connection() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise StorageError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade persona-core before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                importance DOUBLE PRECISION NOT NULL CHECK (importance >= 0.0 AND importance <= 1.0),
                embedding DOUBLE PRECISION[],
                embedding_dim INTEGER,
                source_ids TEXT[] NOT NULL DEFAULT '{}',
                consolidated_into TEXT REFERENCES memory_records(id) ON DELETE SET NULL,
                created_at TIMESTAMPTZ NOT NULL,
                seq BIGSERIAL
            );

            CREATE INDEX IF NOT EXISTS idx_memory_records_recent
            ON memory_records(user_id, persona_id, consolidated_into, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_memory_records_type
            ON memory_records(user_id, persona_id, memory_type, created_at);
            """
        )

    async def insert(self, record: MemoryRecord) -> str:
        if not 0.0 <= record.importance <= 1.0:
            raise StorageError(f"Memory importance out of range: {record.importance}")
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO memory_records ({_COLUMNS}, embedding_dim)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                record.id,
                record.user_id,
                record.persona_id,
                record.content,
                record.memory_type.value,
                float(record.importance),
                list(record.embedding) if record.embedding is not None else None,
                list(record.source_ids),
                record.consolidated_into,
                record.created_at,
                len(record.embedding) if record.embedding is not None else None,
            )
        return record.id

    async def get(self, user_id: str, persona_id: str, memory_id: str) -> MemoryRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM memory_records WHERE id = $1 AND user_id = $2 AND persona_id = $3",
                memory_id,
                user_id,
                persona_id,
            )
        return _row_to_record(row) if row is not None else None

    async def recent(self, user_id: str, persona_id: str, limit: int) -> List[MemoryRecord]:
        if limit <= 0:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = $1 AND persona_id = $2 AND consolidated_into IS NULL
                ORDER BY created_at DESC, seq DESC
                LIMIT $3
                """,
                user_id,
                persona_id,
                int(limit),
            )
        return [_row_to_record(row) for row in rows]

    async def similarity_search(
        self,
        user_id: str,
        persona_id: str,
        query_embedding: Sequence[float],
        limit: int,
    ) -> List[Tuple[MemoryRecord, float]]:
        if limit <= 0:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = $1 AND persona_id = $2
                  AND consolidated_into IS NULL
                  AND embedding IS NOT NULL
                  AND embedding_dim = $3
                ORDER BY created_at DESC, seq DESC
                """,
                user_id,
                persona_id,
                len(query_embedding),
            )
        scored = [
            (record, cosine_similarity(query_embedding, record.embedding or []))
            for record in (_row_to_record(row) for row in rows)
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[: int(limit)]

    async def mark_consolidated(self, ids: Iterable[str], summary_id: str) -> None:
        source_ids = list(dict.fromkeys(str(item) for item in ids))
        if not source_ids:
            return
        if summary_id in source_ids:
            raise StorageError("A memory cannot be consolidated into itself")
        async with self._connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE memory_records
                    SET consolidated_into = $1
                    WHERE id = ANY($2::text[]) AND consolidated_into IS NULL
                    """,
                    summary_id,
                    source_ids,
                )
                updated = int(str(result).rsplit(" ", 1)[-1] or 0)
                if updated != len(source_ids):
                    # Raising inside the transaction block rolls the batch back.
                    raise StorageError(
                        f"Consolidation batch rejected: {len(source_ids) - updated} record(s) missing or already consolidated"
                    )

    async def list_memories(
        self,
        user_id: str,
        persona_id: str,
        *,
        memory_type: MemoryType | None = None,
        include_consolidated: bool = False,
    ) -> List[MemoryRecord]:
        clauses = ["user_id = $1", "persona_id = $2"]
        params: list[object] = [user_id, persona_id]
        if memory_type is not None:
            params.append(memory_type.value)
            clauses.append(f"memory_type = ${len(params)}")
        if not include_consolidated:
            clauses.append("consolidated_into IS NULL")
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at DESC, seq DESC
                """,
                *params,
            )
        return [_row_to_record(row) for row in rows]

    async def consolidation_candidates(
        self,
        user_id: str,
        persona_id: str,
        *,
        older_than: datetime,
        importance_below: float,
    ) -> List[MemoryRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = $1 AND persona_id = $2
                  AND consolidated_into IS NULL
                  AND memory_type <> $3
                  AND importance < $4
                  AND created_at < $5
                ORDER BY memory_type, created_at, seq
                """,
                user_id,
                persona_id,
                MemoryType.SUMMARY.value,
                float(importance_below),
                older_than,
            )
        return [_row_to_record(row) for row in rows]

    async def delete(self, user_id: str, persona_id: str, memory_id: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM memory_records WHERE id = $1 AND user_id = $2 AND persona_id = $3",
                memory_id,
                user_id,
                persona_id,
            )
        return str(result).endswith(" 1")

    async def clear(self, user_id: str, persona_id: str) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM memory_records WHERE user_id = $1 AND persona_id = $2",
                user_id,
                persona_id,
            )
        deleted = int(str(result).rsplit(" ", 1)[-1] or 0)
        logger.info("Cleared %s memories for user=%s persona=%s", deleted, user_id, persona_id)
        return deleted
