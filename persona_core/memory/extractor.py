from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, List

from ..errors import ProviderError
from ..models import ConversationTurn, MemoryType, TurnRole
from ..prompts.memory import build_extractor_user_prompt, extractor_schema_hint, extractor_system_prompt
from ..services.base import JsonChatBackend
from .classifier import calculate_importance, categorize_memory

logger = logging.getLogger("persona_core")

_EXTRACTABLE_TYPES = {
    MemoryType.FACT,
    MemoryType.EMOTION,
    MemoryType.PREFERENCE,
    MemoryType.EVENT,
    MemoryType.RELATIONSHIP,
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_memory_text(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", (text or "").strip().casefold())
    return re.sub(r"[^\w'\-\s]", "", collapsed, flags=re.UNICODE).strip()


@dataclass(slots=True)
class MemoryCandidate:
    content: str
    memory_type: MemoryType
    importance: float


@dataclass(slots=True)
class ExtractionDiagnostics:
    backend_name: str
    latency_ms: int
    llm_attempted: bool
    llm_ok: bool
    fallback_used: bool
    error: str = ""


@dataclass(slots=True)
class ExtractionResult:
    candidates: List[MemoryCandidate] = field(default_factory=list)
    diagnostics: ExtractionDiagnostics | None = None


class MemoryExtractor:
    """Turns a finished exchange into memory candidates via a structured-output LLM, with a heuristic fallback."""

    def __init__(
        self,
        llm: JsonChatBackend | Any | None,
        *,
        candidate_limit: int = 5,
        window_turns: int = 6,
    ) -> None:
        self.llm = llm
        self.candidate_limit = max(1, candidate_limit)
        self.window_turns = max(2, window_turns)

    @property
    def backend_name(self) -> str:
        if self.llm is None:
            return "heuristic"
        raw = str(getattr(self.llm, "backend_name", "") or "").strip().lower()
        return raw or self.llm.__class__.__name__.casefold()

    @staticmethod
    def _sanitize_text(text: str) -> str:
        cleaned = re.sub(r"\s+", " ", text or "").strip()
        return cleaned[:1600]

    def _dialogue_lines(self, turns: Iterable[ConversationTurn]) -> list[str]:
        lines: list[str] = []
        for turn in list(turns)[-self.window_turns :]:
            if turn.role is TurnRole.SYSTEM:
                continue
            content = self._sanitize_text(turn.content)
            if content:
                label = "User" if turn.role is TurnRole.USER else "Persona"
                lines.append(f"{label}: {content}")
        return lines

    @staticmethod
    def heuristic_candidates(turns: Iterable[ConversationTurn]) -> list[MemoryCandidate]:
        out: list[MemoryCandidate] = []
        for turn in turns:
            if turn.role is not TurnRole.USER:
                continue
            for sentence in re.split(r"(?<=[.!?])\s+", turn.content or ""):
                sentence = " ".join(sentence.split())
                if len(sentence) < 8:
                    continue
                classification = categorize_memory(sentence)
                if classification.memory_type is MemoryType.OTHER:
                    continue
                content = f"User said: {sentence}"
                out.append(
                    MemoryCandidate(
                        content=content[:280],
                        memory_type=classification.memory_type,
                        importance=calculate_importance(sentence),
                    )
                )
        return out

    @staticmethod
    def _parse_payload(payload: dict[str, object]) -> list[MemoryCandidate]:
        raw_items = payload.get("memories")
        if not isinstance(raw_items, list):
            return []
        parsed: list[MemoryCandidate] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            content = " ".join(str(item.get("content", "")).split())
            if not content:
                continue
            try:
                memory_type = MemoryType(str(item.get("type", "")).strip().lower())
            except ValueError:
                memory_type = categorize_memory(content).memory_type
            if memory_type not in _EXTRACTABLE_TYPES:
                memory_type = MemoryType.OTHER
            try:
                importance = float(item.get("importance", 0.0))
            except (TypeError, ValueError):
                importance = calculate_importance(content)
            parsed.append(MemoryCandidate(content[:280], memory_type, round(_clamp(importance, 0.0, 1.0), 3)))
        return parsed

    @staticmethod
    def _dedupe(candidates: list[MemoryCandidate]) -> list[MemoryCandidate]:
        unique: dict[str, MemoryCandidate] = {}
        for candidate in candidates:
            key = normalize_memory_text(candidate.content)
            if not key:
                continue
            prev = unique.get(key)
            if prev is None or candidate.importance > prev.importance:
                unique[key] = candidate
        return sorted(unique.values(), key=lambda item: item.importance, reverse=True)

    async def extract(
        self,
        turns: list[ConversationTurn],
        known_memories: Iterable[str] = (),
    ) -> ExtractionResult:
        window = list(turns)[-self.window_turns :]
        started = time.perf_counter()
        if not any(turn.role is TurnRole.USER for turn in window):
            return ExtractionResult()

        if self.llm is None:
            candidates = self._dedupe(self.heuristic_candidates(window))
            return ExtractionResult(
                candidates=candidates[: self.candidate_limit],
                diagnostics=ExtractionDiagnostics(
                    backend_name=self.backend_name,
                    latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
                    llm_attempted=False,
                    llm_ok=False,
                    fallback_used=True,
                ),
            )

        messages = [
            {"role": "system", "content": extractor_system_prompt()},
            {
                "role": "user",
                "content": build_extractor_user_prompt(self._dialogue_lines(window), known_memories),
            },
        ]
        payload: dict[str, object] | None = None
        error_text = ""
        llm_ok = False
        try:
            payload = await self.llm.json_chat(
                messages,
                schema_hint=extractor_schema_hint(),
                temperature=0.1,
                max_output_tokens=800,
            )
            llm_ok = True
        except ProviderError as exc:
            error_text = str(exc)[:220]
            logger.warning("Memory extraction via %s failed, using heuristics: %s", self.backend_name, exc)

        fallback_used = not isinstance(payload, dict)
        if fallback_used:
            candidates = self.heuristic_candidates(window)
        else:
            candidates = self._parse_payload(payload)  # type: ignore[arg-type]
        candidates = self._dedupe(candidates)
        return ExtractionResult(
            candidates=candidates[: self.candidate_limit],
            diagnostics=ExtractionDiagnostics(
                backend_name=self.backend_name,
                latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
                llm_attempted=True,
                llm_ok=llm_ok,
                fallback_used=fallback_used,
                error=error_text,
            ),
        )
