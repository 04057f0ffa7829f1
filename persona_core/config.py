from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    llm_backend: str

    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_embedding_model: str

    ollama_base_url: str
    ollama_model: str
    ollama_embedding_model: str

    llm_timeout_seconds: int
    llm_temperature: float
    llm_max_output_tokens: int

    memory_backend: str
    sqlite_path: Path
    memory_postgres_dsn: str

    memory_recent_limit: int
    memory_search_limit: int
    memory_consolidation_age_days: float
    memory_consolidation_importance_threshold: float
    memory_consolidation_min_group: int
    memory_consolidation_max_group: int
    memory_consolidation_every_turns: int
    memory_extraction_min_importance: float
    memory_degraded_mode: bool

    max_history_turns: int
    fallback_reply: str
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_backend=_env_str("LLM_BACKEND", "gemini").lower(),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_embedding_model=_env_str("GEMINI_EMBEDDING_MODEL", "text-embedding-004"),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            ollama_embedding_model=_env_str("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 60, aliases=("GEMINI_TIMEOUT_SECONDS",)),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.8, aliases=("GEMINI_TEMPERATURE",)),
            llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 0, aliases=("GEMINI_MAX_OUTPUT_TOKENS",)),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/persona_memory.db")).expanduser(),
            memory_postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            memory_recent_limit=_env_int("MEMORY_RECENT_LIMIT", 5),
            memory_search_limit=_env_int("MEMORY_SEARCH_LIMIT", 8),
            memory_consolidation_age_days=_env_float("MEMORY_CONSOLIDATION_AGE_DAYS", 14.0),
            memory_consolidation_importance_threshold=_env_float("MEMORY_CONSOLIDATION_IMPORTANCE_THRESHOLD", 0.5),
            memory_consolidation_min_group=_env_int("MEMORY_CONSOLIDATION_MIN_GROUP", 3),
            memory_consolidation_max_group=_env_int("MEMORY_CONSOLIDATION_MAX_GROUP", 12),
            memory_consolidation_every_turns=_env_int("MEMORY_CONSOLIDATION_EVERY_TURNS", 20),
            memory_extraction_min_importance=_env_float("MEMORY_EXTRACTION_MIN_IMPORTANCE", 0.5),
            memory_degraded_mode=_env_bool("MEMORY_DEGRADED_MODE", False),
            max_history_turns=_env_int("MAX_HISTORY_TURNS", 20, aliases=("MAX_RECENT_MESSAGES",)),
            fallback_reply=_env_str("FALLBACK_REPLY", "I couldn't process that, please try again."),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.llm_backend not in {"gemini", "ollama"}:
            raise ValueError("LLM_BACKEND must be 'gemini' or 'ollama'")
        if self.llm_backend == "gemini":
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when LLM_BACKEND=gemini")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.llm_backend == "ollama" and not self.ollama_model:
            raise ValueError("OLLAMA_MODEL cannot be empty")

        if self.llm_timeout_seconds < 5:
            raise ValueError("LLM_TIMEOUT_SECONDS must be >= 5")
        if self.llm_temperature < 0.0 or self.llm_temperature > 2.0:
            raise ValueError("LLM_TEMPERATURE must be in [0, 2]")
        if self.llm_max_output_tokens < 0:
            raise ValueError("LLM_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")

        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.memory_postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        if self.memory_recent_limit < 0:
            raise ValueError("MEMORY_RECENT_LIMIT must be >= 0")
        if self.memory_search_limit < 1:
            raise ValueError("MEMORY_SEARCH_LIMIT must be >= 1")
        if self.memory_consolidation_age_days < 0:
            raise ValueError("MEMORY_CONSOLIDATION_AGE_DAYS must be >= 0")
        if not 0.0 <= self.memory_consolidation_importance_threshold <= 1.0:
            raise ValueError("MEMORY_CONSOLIDATION_IMPORTANCE_THRESHOLD must be in [0, 1]")
        if self.memory_consolidation_min_group < 2:
            raise ValueError("MEMORY_CONSOLIDATION_MIN_GROUP must be >= 2")
        if self.memory_consolidation_max_group < self.memory_consolidation_min_group:
            raise ValueError("MEMORY_CONSOLIDATION_MAX_GROUP must be >= MEMORY_CONSOLIDATION_MIN_GROUP")
        if self.memory_consolidation_every_turns < 0:
            raise ValueError("MEMORY_CONSOLIDATION_EVERY_TURNS must be >= 0 (0 disables)")
        if not 0.0 <= self.memory_extraction_min_importance <= 1.0:
            raise ValueError("MEMORY_EXTRACTION_MIN_IMPORTANCE must be in [0, 1]")

        if self.max_history_turns < 2:
            raise ValueError("MAX_HISTORY_TURNS must be >= 2")
        if not self.fallback_reply.strip():
            raise ValueError("FALLBACK_REPLY cannot be empty")
