from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .store import MemoryStore


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _resolve_backend(backend: str | None = None) -> str:
    resolved = (backend or _env("MEMORY_BACKEND", "sqlite")).strip().lower()
    if resolved in {"sqlite", "postgres"}:
        return resolved
    raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")


def build_memory_store(sqlite_path: Path, *, backend: str | None = None, postgres_dsn: str | None = None) -> Any:
    resolved = _resolve_backend(backend)
    if resolved == "sqlite":
        return MemoryStore(sqlite_path)

    dsn = (postgres_dsn or _env("MEMORY_POSTGRES_DSN")).strip()
    if not dsn:
        raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

    from .postgres_store import PostgresMemoryStore

    return PostgresMemoryStore(dsn)
