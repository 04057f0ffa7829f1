from __future__ import annotations

from .storage.records import MemoryRecordsMixin
from .storage.schema import MemorySchemaMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemoryRecordsMixin,
):
    """Persistent per-(user, persona) memory records with embedding similarity search."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        return None
