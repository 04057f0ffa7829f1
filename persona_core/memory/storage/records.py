from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

import aiosqlite

from ...errors import StorageError
from ...models import MemoryRecord, MemoryType
from .utils import (
    _sqlite_memory_connection,
    cosine_similarity,
    deserialize_embedding,
    format_timestamp,
    parse_timestamp,
    serialize_embedding,
)

_COLUMNS = (
    "id, user_id, persona_id, content, memory_type, importance, embedding, "
    "source_ids, consolidated_into, created_at"
)


def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
    return MemoryRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        persona_id=str(row["persona_id"]),
        content=str(row["content"]),
        memory_type=MemoryType(str(row["memory_type"])),
        importance=float(row["importance"]),
        embedding=deserialize_embedding(row["embedding"]),
        source_ids=[str(item) for item in json.loads(row["source_ids"] or "[]")],
        consolidated_into=row["consolidated_into"],
        created_at=parse_timestamp(str(row["created_at"])),
    )


class MemoryRecordsMixin:
    async def insert(self, record: MemoryRecord) -> str:
        if not 0.0 <= record.importance <= 1.0:
            raise StorageError(f"Memory importance out of range: {record.importance}")
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO memory_records ({_COLUMNS}, embedding_dim)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.persona_id,
                    record.content,
                    record.memory_type.value,
                    float(record.importance),
                    serialize_embedding(record.embedding),
                    json.dumps(list(record.source_ids)),
                    record.consolidated_into,
                    format_timestamp(record.created_at),
                    len(record.embedding) if record.embedding is not None else None,
                ),
            )
            await db.commit()
        return record.id

    async def get(self, user_id: str, persona_id: str, memory_id: str) -> MemoryRecord | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM memory_records WHERE id = ? AND user_id = ? AND persona_id = ?",
                (memory_id, user_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def recent(self, user_id: str, persona_id: str, limit: int) -> List[MemoryRecord]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = ? AND persona_id = ? AND consolidated_into IS NULL
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, persona_id, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
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
        dim = len(query_embedding)
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = ? AND persona_id = ?
                  AND consolidated_into IS NULL
                  AND embedding IS NOT NULL
                  AND embedding_dim = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id, persona_id, dim),
            ) as cursor:
                rows = await cursor.fetchall()

        scored: list[tuple[MemoryRecord, float]] = []
        for row in rows:
            record = _row_to_record(row)
            if record.embedding is None:
                continue
            scored.append((record, cosine_similarity(query_embedding, record.embedding)))
        # Stable sort keeps newer records first among equal scores.
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[: int(limit)]

    async def mark_consolidated(self, ids: Iterable[str], summary_id: str) -> None:
        source_ids = list(dict.fromkeys(str(item) for item in ids))
        if not source_ids:
            return
        if summary_id in source_ids:
            raise StorageError("A memory cannot be consolidated into itself")
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                updated = 0
                for memory_id in source_ids:
                    cursor = await db.execute(
                        """
                        UPDATE memory_records
                        SET consolidated_into = ?
                        WHERE id = ? AND consolidated_into IS NULL
                        """,
                        (summary_id, memory_id),
                    )
                    updated += cursor.rowcount
                    await cursor.close()
                if updated != len(source_ids):
                    raise StorageError(
                        f"Consolidation batch rejected: {len(source_ids) - updated} record(s) missing or already consolidated"
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def list_memories(
        self,
        user_id: str,
        persona_id: str,
        *,
        memory_type: MemoryType | None = None,
        include_consolidated: bool = False,
    ) -> List[MemoryRecord]:
        clauses = ["user_id = ?", "persona_id = ?"]
        params: list[object] = [user_id, persona_id]
        if memory_type is not None:
            clauses.append("memory_type = ?")
            params.append(memory_type.value)
        if not include_consolidated:
            clauses.append("consolidated_into IS NULL")
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at DESC, rowid DESC
                """,
                tuple(params),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def consolidation_candidates(
        self,
        user_id: str,
        persona_id: str,
        *,
        older_than: datetime,
        importance_below: float,
    ) -> List[MemoryRecord]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS}
                FROM memory_records
                WHERE user_id = ? AND persona_id = ?
                  AND consolidated_into IS NULL
                  AND memory_type <> ?
                  AND importance < ?
                  AND created_at < ?
                ORDER BY memory_type, created_at, rowid
                """,
                (
                    user_id,
                    persona_id,
                    MemoryType.SUMMARY.value,
                    float(importance_below),
                    format_timestamp(older_than),
                ),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def delete(self, user_id: str, persona_id: str, memory_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memory_records WHERE id = ? AND user_id = ? AND persona_id = ?",
                (memory_id, user_id, persona_id),
            )
            deleted = cursor.rowcount
            await cursor.close()
            await db.commit()
        return deleted > 0

    async def clear(self, user_id: str, persona_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memory_records WHERE user_id = ? AND persona_id = ?",
                (user_id, persona_id),
            )
            deleted = cursor.rowcount
            await cursor.close()
            await db.commit()
        return max(0, deleted)
