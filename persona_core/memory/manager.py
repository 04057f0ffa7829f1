from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List

from ..errors import ClassificationError, ProviderError, ProviderErrorKind, StorageError
from ..models import ConversationTurn, MemoryClassification, MemoryRecord, MemoryType, utc_now
from ..prompts.memory import (
    build_consolidation_user_prompt,
    build_relationship_summary_user_prompt,
    consolidation_system_prompt,
    relationship_summary_system_prompt,
)
from ..services.base import EmbeddingProvider, LanguageModel
from .classifier import calculate_importance, categorize_memory
from .extractor import MemoryExtractor, normalize_memory_text

logger = logging.getLogger("persona_core")


@dataclass(slots=True)
class MemoryPolicy:
    recent_limit: int = 5
    search_limit: int = 8
    consolidation_age_days: float = 14.0
    consolidation_importance_threshold: float = 0.5
    consolidation_min_group: int = 3
    consolidation_max_group: int = 12
    extraction_min_importance: float = 0.5
    degraded_mode: bool = False
    summary_max_chars: int = 600

    @classmethod
    def from_settings(cls, settings: Any) -> "MemoryPolicy":
        return cls(
            recent_limit=settings.memory_recent_limit,
            search_limit=settings.memory_search_limit,
            consolidation_age_days=settings.memory_consolidation_age_days,
            consolidation_importance_threshold=settings.memory_consolidation_importance_threshold,
            consolidation_min_group=settings.memory_consolidation_min_group,
            consolidation_max_group=settings.memory_consolidation_max_group,
            extraction_min_importance=settings.memory_extraction_min_importance,
            degraded_mode=settings.memory_degraded_mode,
        )


class MemoryManager:
    """Classifies, scores, stores, retrieves and consolidates memories for one (user, persona) pair."""

    def __init__(
        self,
        store: Any,
        embedder: EmbeddingProvider,
        *,
        user_id: str,
        persona_id: str,
        llm: LanguageModel | None = None,
        extractor: MemoryExtractor | None = None,
        policy: MemoryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not str(user_id or "").strip() or not str(persona_id or "").strip():
            raise ValueError("MemoryManager requires both user_id and persona_id")
        self.store = store
        self.embedder = embedder
        self.user_id = str(user_id)
        self.persona_id = str(persona_id)
        self.llm = llm
        self.extractor = extractor
        self.policy = policy or MemoryPolicy()
        self._clock = clock

    @staticmethod
    def categorize_memory(text: str) -> MemoryClassification:
        return categorize_memory(text)

    @staticmethod
    def calculate_importance(text: str) -> float:
        return calculate_importance(text)

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self.embedder.embed(text)
        except ProviderError as exc:
            if exc.kind is not ProviderErrorKind.UNAVAILABLE:
                raise
            logger.info("Embedding provider unavailable, retrying once: %s", exc)
        return await self.embedder.embed(text)

    async def _embedding_for_storage(self, text: str, *, degraded: bool) -> list[float] | None:
        try:
            return await self._embed(text)
        except ProviderError as exc:
            if degraded:
                logger.warning(
                    "Storing memory without embedding for user=%s persona=%s (%s)",
                    self.user_id,
                    self.persona_id,
                    exc,
                )
                return None
            raise ClassificationError(f"Embedding unavailable, memory not stored: {exc}") from exc

    async def add_memory(
        self,
        content: str,
        memory_type: MemoryType | str | None = None,
        importance: float | None = None,
        *,
        degraded: bool | None = None,
    ) -> MemoryRecord:
        text = " ".join((content or "").split())
        if not text:
            raise ValueError("Memory content cannot be empty")
        if memory_type is None:
            resolved_type = categorize_memory(text).memory_type
        else:
            resolved_type = MemoryType(memory_type)
        if importance is None:
            score = calculate_importance(text)
        else:
            score = float(importance)
            if math.isnan(score) or not 0.0 <= score <= 1.0:
                raise ValueError(f"Memory importance must be within [0, 1], got {importance!r}")

        allow_degraded = self.policy.degraded_mode if degraded is None else degraded
        embedding = await self._embedding_for_storage(text, degraded=allow_degraded)
        record = MemoryRecord(
            user_id=self.user_id,
            persona_id=self.persona_id,
            content=text,
            memory_type=resolved_type,
            importance=score,
            embedding=embedding,
            created_at=self._clock(),
        )
        await self.store.insert(record)
        return record

    async def get_recent_memories(self, limit: int | None = None) -> List[MemoryRecord]:
        selected = self.policy.recent_limit if limit is None else limit
        return await self.store.recent(self.user_id, self.persona_id, max(0, int(selected)))

    async def search_memories(self, query_text: str, limit: int = 10) -> List[MemoryRecord]:
        if not (query_text or "").strip() or limit <= 0:
            return []
        query_embedding = await self._embed(query_text)
        scored = await self.store.similarity_search(self.user_id, self.persona_id, query_embedding, int(limit))
        return [record for record, _score in scored]

    async def retrieve_context(self, query_text: str) -> List[MemoryRecord]:
        """Similar memories first, then recent ones, without duplicates.

        A provider outage during the semantic half degrades to recency only;
        storage failures propagate.
        """
        similar: list[MemoryRecord] = []
        try:
            similar = await self.search_memories(query_text, self.policy.search_limit)
        except ProviderError as exc:
            logger.warning("Semantic memory search unavailable, using recent memories only: %s", exc)
        recent = await self.get_recent_memories()
        seen: set[str] = set()
        combined: list[MemoryRecord] = []
        for record in [*similar, *recent]:
            if record.id in seen:
                continue
            seen.add(record.id)
            combined.append(record)
        return combined

    def _group_candidates(self, candidates: Iterable[MemoryRecord]) -> list[tuple[MemoryType, list[MemoryRecord]]]:
        by_type: dict[MemoryType, list[MemoryRecord]] = {}
        for record in candidates:
            by_type.setdefault(record.memory_type, []).append(record)

        groups: list[tuple[MemoryType, list[MemoryRecord]]] = []
        max_size = max(1, self.policy.consolidation_max_group)
        for memory_type, records in by_type.items():
            records.sort(key=lambda item: item.created_at)
            if len(records) < self.policy.consolidation_min_group:
                continue
            # Even chunks; an undersized remainder waits for a later run.
            chunk_count = math.ceil(len(records) / max_size)
            base, extra = divmod(len(records), chunk_count)
            start = 0
            for index in range(chunk_count):
                size = base + (1 if index < extra else 0)
                if size >= self.policy.consolidation_min_group:
                    groups.append((memory_type, records[start : start + size]))
                start += size
        return groups

    @staticmethod
    def _fallback_summary(memory_type: MemoryType, records: list[MemoryRecord]) -> str:
        joined = "; ".join(record.content.rstrip(".") for record in records)
        return f"Summary of {len(records)} {memory_type.value} memories: {joined}"

    async def _summarize_group(self, memory_type: MemoryType, records: list[MemoryRecord]) -> str:
        if self.llm is None:
            return self._fallback_summary(memory_type, records)
        try:
            text = await self.llm.complete(
                consolidation_system_prompt(self.policy.summary_max_chars),
                [
                    {
                        "role": "user",
                        "content": build_consolidation_user_prompt(
                            memory_type.value,
                            (record.content for record in records),
                        ),
                    }
                ],
                temperature=0.2,
            )
        except ProviderError as exc:
            logger.warning("Consolidation summary via language model failed, using concatenation: %s", exc)
            return self._fallback_summary(memory_type, records)
        text = " ".join((text or "").split())
        return text or self._fallback_summary(memory_type, records)

    async def consolidate_memories(self) -> List[MemoryRecord]:
        cutoff = self._clock() - timedelta(days=self.policy.consolidation_age_days)
        candidates = await self.store.consolidation_candidates(
            self.user_id,
            self.persona_id,
            older_than=cutoff,
            importance_below=self.policy.consolidation_importance_threshold,
        )
        summaries: list[MemoryRecord] = []
        for memory_type, group in self._group_candidates(candidates):
            content = await self._summarize_group(memory_type, group)
            embedding = await self._embedding_for_storage(content, degraded=self.policy.degraded_mode)
            summary = MemoryRecord(
                user_id=self.user_id,
                persona_id=self.persona_id,
                content=content,
                memory_type=MemoryType.SUMMARY,
                importance=max(record.importance for record in group),
                embedding=embedding,
                source_ids=[record.id for record in group],
                created_at=self._clock(),
            )
            await self.store.insert(summary)
            try:
                await self.store.mark_consolidated(summary.source_ids, summary.id)
            except StorageError:
                # Drop the orphaned summary so a later run can retry the same group.
                try:
                    await self.store.delete(self.user_id, self.persona_id, summary.id)
                except StorageError:
                    logger.exception("Failed to remove orphaned summary %s", summary.id)
                raise
            logger.info(
                "Consolidated %s %s memories into %s for user=%s persona=%s",
                len(group),
                memory_type.value,
                summary.id,
                self.user_id,
                self.persona_id,
            )
            summaries.append(summary)
        return summaries

    async def _summary_records(self) -> tuple[list[MemoryRecord], list[MemoryRecord]]:
        records = await self.store.list_memories(self.user_id, self.persona_id)
        important = sorted(records, key=lambda item: (item.importance, item.created_at), reverse=True)[:5]
        important_ids = {record.id for record in important}
        recent = [record for record in records if record.id not in important_ids][:5]
        return important, recent

    async def generate_summary(self, *, use_model: bool = False) -> str:
        important, recent = await self._summary_records()
        records = [*important, *recent]
        if not records:
            return "No memories have been recorded for this relationship yet."

        if use_model and self.llm is not None:
            try:
                text = await self.llm.complete(
                    relationship_summary_system_prompt(self.policy.summary_max_chars),
                    [
                        {
                            "role": "user",
                            "content": build_relationship_summary_user_prompt(
                                f"- [{record.memory_type.value}] {record.content}" for record in records
                            ),
                        }
                    ],
                    temperature=0.3,
                )
                text = " ".join((text or "").split())
                if text:
                    return text
            except ProviderError as exc:
                logger.warning("Relationship summary via language model failed: %s", exc)

        parts = ["Most important: " + "; ".join(record.content.rstrip(".") for record in important) + "."]
        if recent:
            parts.append("Recently: " + "; ".join(record.content.rstrip(".") for record in recent) + ".")
        return " ".join(parts)

    async def get_memories_by_type(self, memory_type: MemoryType | str) -> List[MemoryRecord]:
        return await self.store.list_memories(self.user_id, self.persona_id, memory_type=MemoryType(memory_type))

    async def get_all_memories(self, *, include_consolidated: bool = False) -> List[MemoryRecord]:
        return await self.store.list_memories(
            self.user_id,
            self.persona_id,
            include_consolidated=include_consolidated,
        )

    async def delete_memory(self, memory_id: str) -> bool:
        return await self.store.delete(self.user_id, self.persona_id, memory_id)

    async def clear_all_memories(self) -> int:
        return await self.store.clear(self.user_id, self.persona_id)

    async def export_memories(self) -> str:
        records = await self.get_all_memories(include_consolidated=True)
        records.sort(key=lambda item: item.created_at)
        return json.dumps([record.to_dict() for record in records], ensure_ascii=False, indent=2)

    async def import_memories(self, payload: str) -> int:
        try:
            items = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as exc:
            logger.warning("Rejected memory import: invalid JSON (%s)", exc)
            return 0
        if not isinstance(items, list):
            logger.warning("Rejected memory import: expected a JSON array")
            return 0

        records: list[MemoryRecord] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                record = MemoryRecord.from_dict(
                    {**item, "user_id": self.user_id, "persona_id": self.persona_id}
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed memory in import: %s", exc)
                continue
            if not 0.0 <= record.importance <= 1.0:
                logger.warning("Skipping memory %s with out-of-range importance", record.id)
                continue
            records.append(record)

        incoming_ids = {record.id for record in records}
        # Summaries first so consolidated sources can reference them.
        records.sort(key=lambda item: item.consolidated_into is not None)
        imported = 0
        for record in records:
            if await self.store.get(self.user_id, self.persona_id, record.id) is not None:
                continue
            if record.consolidated_into and record.consolidated_into not in incoming_ids:
                existing = await self.store.get(self.user_id, self.persona_id, record.consolidated_into)
                if existing is None:
                    record.consolidated_into = None
            await self.store.insert(record)
            imported += 1
        return imported

    async def record_exchange(self, turns: list[ConversationTurn]) -> List[MemoryRecord]:
        """Extract and store memories from a completed exchange."""
        if self.extractor is None or not turns:
            return []
        known = await self.get_recent_memories(20)
        known_keys = {normalize_memory_text(record.content) for record in known}
        result = await self.extractor.extract(turns, (record.content for record in known))

        stored: list[MemoryRecord] = []
        for candidate in result.candidates:
            if candidate.importance <= self.policy.extraction_min_importance:
                continue
            key = normalize_memory_text(candidate.content)
            if not key or key in known_keys:
                continue
            record = await self.add_memory(candidate.content, candidate.memory_type, candidate.importance)
            known_keys.add(key)
            stored.append(record)

        diagnostics = result.diagnostics
        if diagnostics is not None:
            if diagnostics.llm_attempted and diagnostics.fallback_used:
                logger.warning(
                    "Memory extraction for user=%s persona=%s fell back to heuristics (backend=%s, error=%s)",
                    self.user_id,
                    self.persona_id,
                    diagnostics.backend_name,
                    diagnostics.error or "invalid JSON",
                )
            logger.debug(
                "Memory extraction via %s took %sms: %s candidates, %s stored, fallback=%s",
                diagnostics.backend_name,
                diagnostics.latency_ms,
                len(result.candidates),
                len(stored),
                diagnostics.fallback_used,
            )
        return stored
