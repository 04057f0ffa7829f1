from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_core.errors import ClassificationError, ProviderError, ProviderErrorKind, StorageError  # noqa: E402
from persona_core.memory.extractor import MemoryExtractor  # noqa: E402
from persona_core.memory.manager import MemoryManager, MemoryPolicy  # noqa: E402
from persona_core.memory.store import MemoryStore  # noqa: E402
from persona_core.models import ConversationTurn, MemoryType, TurnRole  # noqa: E402

_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
_VOCAB = ("jazz", "music", "nurse", "hospital", "dog", "happy", "birthday", "morning", "coffee", "tea")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _FakeEmbedder:
    def __init__(self, failures: list[ProviderError] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.failures:
            raise self.failures.pop(0)
        lowered = text.casefold()
        return [float(lowered.count(word)) for word in _VOCAB] + [0.1]


class _FakeLLM:
    def __init__(self, reply: str | Exception = "User enjoys quiet evenings with tea.") -> None:
        self.reply = reply
        self.calls: list[dict[str, object]] = []

    async def complete(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
        self.calls.append({"system_prompt": system_prompt, "history": history, "temperature": temperature})
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class _FakeJsonLLM:
    def __init__(self, payload: dict | None) -> None:
        self.payload = payload
        self.calls: list[dict[str, object]] = []

    async def json_chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"messages": messages, "kwargs": kwargs})
        return self.payload


def _unavailable() -> ProviderError:
    return ProviderError(ProviderErrorKind.UNAVAILABLE, "embedding backend down")


def _manager(
    tmp_path: Path,
    *,
    embedder: _FakeEmbedder | None = None,
    llm: object | None = None,
    extractor: MemoryExtractor | None = None,
    policy: MemoryPolicy | None = None,
    clock: _Clock | None = None,
    store: MemoryStore | None = None,
    user_id: str = "u1",
) -> MemoryManager:
    return MemoryManager(
        store or MemoryStore(tmp_path / "memory.db"),
        embedder or _FakeEmbedder(),
        user_id=user_id,
        persona_id="luna",
        llm=llm,  # type: ignore[arg-type]
        extractor=extractor,
        policy=policy,
        clock=clock or _Clock(_NOW),
    )


def test_add_memory_roundtrip_preserves_explicit_type_and_importance(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        stored = await manager.add_memory("User prefers morning conversations", MemoryType.EVENT, 0.42)
        recent = await manager.get_recent_memories()
        assert len(recent) == 1
        assert recent[0].id == stored.id
        assert recent[0].memory_type is MemoryType.EVENT
        assert recent[0].importance == pytest.approx(0.42)
        assert recent[0].embedding is not None

    asyncio.run(scenario())


def test_add_memory_classifies_and_scores_when_not_given(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        record = await manager.add_memory("User prefers morning conversations")
        assert record.memory_type is MemoryType.PREFERENCE
        assert record.importance == manager.calculate_importance("User prefers morning conversations")

    asyncio.run(scenario())


def test_add_memory_rejects_bad_input(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        with pytest.raises(ValueError):
            await manager.add_memory("   ")
        with pytest.raises(ValueError):
            await manager.add_memory("User likes tea", importance=1.2)
        with pytest.raises(ValueError):
            await manager.add_memory("User likes tea", memory_type="gossip")
        assert await manager.get_recent_memories() == []

    asyncio.run(scenario())


def test_embedding_outage_fails_add_memory_without_degraded_mode(tmp_path: Path) -> None:
    embedder = _FakeEmbedder([_unavailable(), _unavailable()])
    manager = _manager(tmp_path, embedder=embedder)

    async def scenario() -> None:
        await manager.store.init()
        with pytest.raises(ClassificationError):
            await manager.add_memory("User works as a nurse")
        assert len(embedder.calls) == 2
        assert await manager.get_recent_memories() == []

    asyncio.run(scenario())


def test_embedding_is_retried_once_for_unavailable_only(tmp_path: Path) -> None:
    async def scenario() -> None:
        flaky = _FakeEmbedder([_unavailable()])
        manager = _manager(tmp_path, embedder=flaky)
        await manager.store.init()
        record = await manager.add_memory("User works as a nurse")
        assert record.embedding is not None
        assert len(flaky.calls) == 2

        limited = _FakeEmbedder([ProviderError(ProviderErrorKind.RATE_LIMITED, "slow down")])
        manager = _manager(tmp_path, embedder=limited)
        with pytest.raises(ClassificationError):
            await manager.add_memory("User likes jazz")
        assert len(limited.calls) == 1

    asyncio.run(scenario())


def test_degraded_mode_stores_without_embedding_and_hides_from_search(tmp_path: Path) -> None:
    embedder = _FakeEmbedder([_unavailable(), _unavailable()])
    manager = _manager(tmp_path, embedder=embedder, policy=MemoryPolicy(degraded_mode=True))

    async def scenario() -> None:
        await manager.store.init()
        degraded = await manager.add_memory("User loves jazz music")
        assert degraded.embedding is None
        healthy = await manager.add_memory("User loves jazz concerts")

        recent_ids = {record.id for record in await manager.get_recent_memories()}
        assert recent_ids == {degraded.id, healthy.id}
        found = await manager.search_memories("jazz")
        assert [record.id for record in found] == [healthy.id]

    asyncio.run(scenario())


def test_search_memories_ranks_by_similarity(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        jazz = await manager.add_memory("User loves jazz music")
        nurse = await manager.add_memory("User works as a nurse at the hospital")
        await manager.add_memory("User has a dog")

        assert [record.id for record in await manager.search_memories("jazz music tonight", limit=1)] == [jazz.id]
        assert (await manager.search_memories("hospital shift", limit=2))[0].id == nurse.id
        assert await manager.search_memories("", limit=3) == []

    asyncio.run(scenario())


def test_retrieve_context_falls_back_to_recent_when_embedding_fails(tmp_path: Path) -> None:
    embedder = _FakeEmbedder()
    manager = _manager(tmp_path, embedder=embedder)

    async def scenario() -> None:
        await manager.store.init()
        first = await manager.add_memory("User loves jazz music")
        second = await manager.add_memory("User has a dog")

        combined = await manager.retrieve_context("jazz")
        assert combined[0].id == first.id
        assert {record.id for record in combined} == {first.id, second.id}

        embedder.failures = [_unavailable(), _unavailable()]
        fallback = await manager.retrieve_context("jazz")
        assert [record.id for record in fallback] == [second.id, first.id]

    asyncio.run(scenario())


def _seed_old_memories(manager: MemoryManager, clock: _Clock, items: list[tuple[str, MemoryType, float]]):  # type: ignore[no-untyped-def]
    async def seed() -> list:
        clock.now = _NOW - timedelta(days=30)
        records = [await manager.add_memory(text, memory_type, importance) for text, memory_type, importance in items]
        clock.now = _NOW
        return records

    return seed()


def test_consolidation_summarizes_old_low_importance_groups_once(tmp_path: Path) -> None:
    clock = _Clock(_NOW)
    manager = _manager(tmp_path, clock=clock)

    async def scenario() -> None:
        await manager.store.init()
        sources = await _seed_old_memories(
            manager,
            clock,
            [
                ("User likes tea", MemoryType.PREFERENCE, 0.3),
                ("User likes rain", MemoryType.PREFERENCE, 0.2),
                ("User likes long walks", MemoryType.PREFERENCE, 0.35),
                ("User mentioned a new café", MemoryType.EVENT, 0.2),
            ],
        )
        important = await manager.add_memory("User's mother passed away", MemoryType.EVENT, 0.95)

        summaries = await manager.consolidate_memories()
        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.memory_type is MemoryType.SUMMARY
        assert summary.importance == pytest.approx(0.35)
        assert summary.source_ids == [record.id for record in sources[:3]]
        assert summary.content == (
            "Summary of 3 preference memories: User likes tea; User likes rain; User likes long walks"
        )

        recent_ids = [record.id for record in await manager.get_recent_memories(10)]
        assert summary.id in recent_ids
        assert important.id in recent_ids
        assert sources[3].id in recent_ids
        assert not {record.id for record in sources[:3]} & set(recent_ids)
        searched = {record.id for record in await manager.search_memories("tea", limit=10)}
        assert not {record.id for record in sources[:3]} & searched

        assert await manager.consolidate_memories() == []

    asyncio.run(scenario())


def test_consolidation_chunks_large_groups_evenly(tmp_path: Path) -> None:
    clock = _Clock(_NOW)
    policy = MemoryPolicy(consolidation_min_group=2, consolidation_max_group=3)
    manager = _manager(tmp_path, clock=clock, policy=policy)

    async def scenario() -> None:
        await manager.store.init()
        await _seed_old_memories(
            manager,
            clock,
            [(f"User mentioned detail {i}", MemoryType.OTHER, 0.1) for i in range(7)],
        )
        summaries = await manager.consolidate_memories()
        assert sorted(len(summary.source_ids) for summary in summaries) == [2, 2, 3]
        all_sources = [item for summary in summaries for item in summary.source_ids]
        assert len(all_sources) == len(set(all_sources)) == 7

    asyncio.run(scenario())


def test_consolidation_uses_language_model_and_falls_back_on_error(tmp_path: Path) -> None:
    items = [
        ("User likes tea", MemoryType.PREFERENCE, 0.3),
        ("User likes rain", MemoryType.PREFERENCE, 0.2),
        ("User likes long walks", MemoryType.PREFERENCE, 0.35),
    ]

    async def scenario() -> None:
        clock = _Clock(_NOW)
        llm = _FakeLLM("User enjoys tea, rain and long walks.")
        manager = _manager(tmp_path, llm=llm, clock=clock)
        await manager.store.init()
        await _seed_old_memories(manager, clock, items)
        summaries = await manager.consolidate_memories()
        assert summaries[0].content == "User enjoys tea, rain and long walks."
        assert "User likes rain" in llm.calls[0]["history"][0]["content"]  # type: ignore[index]

        clock = _Clock(_NOW)
        failing = _FakeLLM(ProviderError(ProviderErrorKind.TIMEOUT, "slow"))
        other = _manager(tmp_path, llm=failing, clock=clock, user_id="u2")
        await _seed_old_memories(other, clock, items)
        summaries = await other.consolidate_memories()
        assert summaries[0].content.startswith("Summary of 3 preference memories:")

    asyncio.run(scenario())


class _FailingMarkStore(MemoryStore):
    async def mark_consolidated(self, ids, summary_id):  # type: ignore[no-untyped-def]
        raise StorageError("disk full")


def test_failed_consolidation_leaves_no_orphan_summary(tmp_path: Path) -> None:
    clock = _Clock(_NOW)
    manager = _manager(tmp_path, clock=clock, store=_FailingMarkStore(tmp_path / "memory.db"))

    async def scenario() -> None:
        await manager.store.init()
        sources = await _seed_old_memories(
            manager,
            clock,
            [(f"User likes snack {i}", MemoryType.PREFERENCE, 0.2) for i in range(3)],
        )
        with pytest.raises(StorageError):
            await manager.consolidate_memories()
        remaining = await manager.get_all_memories(include_consolidated=True)
        assert {record.id for record in remaining} == {record.id for record in sources}

    asyncio.run(scenario())


def test_generate_summary_lists_important_then_recent(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        assert await manager.generate_summary() == "No memories have been recorded for this relationship yet."
        await manager.add_memory("User has a dog named Bublyk", MemoryType.FACT, 0.7)
        await manager.add_memory("User got promoted", MemoryType.EVENT, 0.9)
        summary = await manager.generate_summary()
        assert summary.startswith("Most important: User got promoted; User has a dog named Bublyk")

        llm = _FakeLLM("They recently got promoted and adore their dog.")
        manager.llm = llm  # type: ignore[assignment]
        assert await manager.generate_summary(use_model=True) == "They recently got promoted and adore their dog."

    asyncio.run(scenario())


def test_memory_admin_by_type_delete_and_clear(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        fact = await manager.add_memory("User works as a nurse", MemoryType.FACT, 0.6)
        await manager.add_memory("User likes tea", MemoryType.PREFERENCE, 0.5)

        assert [record.id for record in await manager.get_memories_by_type("fact")] == [fact.id]
        assert await manager.delete_memory(fact.id) is True
        assert await manager.delete_memory(fact.id) is False
        assert await manager.clear_all_memories() == 1
        assert await manager.get_all_memories() == []

    asyncio.run(scenario())


def test_export_import_moves_memories_between_stores(tmp_path: Path) -> None:
    source = _manager(tmp_path)
    target = _manager(tmp_path, store=MemoryStore(tmp_path / "other.db"), user_id="u9")

    async def scenario() -> None:
        await source.store.init()
        await target.store.init()
        await source.add_memory("User works as a nurse", MemoryType.FACT, 0.6)
        await source.add_memory("User likes tea", MemoryType.PREFERENCE, 0.5)

        payload = await source.export_memories()
        items = json.loads(payload)
        assert [item["content"] for item in items] == ["User works as a nurse", "User likes tea"]

        assert await target.import_memories(payload) == 2
        assert await target.import_memories(payload) == 0
        imported = await target.get_all_memories()
        assert {record.user_id for record in imported} == {"u9"}
        assert {record.content for record in imported} == {"User works as a nurse", "User likes tea"}

        assert await target.import_memories("{not json") == 0
        assert await target.import_memories('{"content": "not a list"}') == 0

    asyncio.run(scenario())


def test_record_exchange_stores_new_important_candidates_only(tmp_path: Path) -> None:
    llm = _FakeJsonLLM(
        {
            "memories": [
                {"type": "fact", "content": "User works as a nurse", "importance": 0.8},
                {"type": "preference", "content": "User likes tea", "importance": 0.7},
                {"type": "emotion", "content": "User is a bit tired", "importance": 0.4},
            ]
        }
    )
    manager = _manager(tmp_path, extractor=MemoryExtractor(llm))
    turns = [
        ConversationTurn(role=TurnRole.USER, content="I just finished a night shift, I'm a nurse. Tea time!"),
        ConversationTurn(role=TurnRole.ASSISTANT, content="That sounds exhausting, enjoy your tea."),
    ]

    async def scenario() -> None:
        await manager.store.init()
        await manager.add_memory("User likes tea.", MemoryType.PREFERENCE, 0.6)
        stored = await manager.record_exchange(turns)
        assert [record.content for record in stored] == ["User works as a nurse"]
        assert stored[0].memory_type is MemoryType.FACT
        assert stored[0].importance == pytest.approx(0.8)
        user_prompt = llm.calls[0]["messages"][1]["content"]  # type: ignore[index]
        assert "User likes tea." in user_prompt
        assert "night shift" in user_prompt

    asyncio.run(scenario())


def test_record_exchange_uses_heuristics_without_language_model(tmp_path: Path) -> None:
    manager = _manager(tmp_path, extractor=MemoryExtractor(None))
    turns = [ConversationTurn(role=TurnRole.USER, content="My birthday is March 15th. What's up?")]

    async def scenario() -> None:
        await manager.store.init()
        stored = await manager.record_exchange(turns)
        assert [record.content for record in stored] == ["User said: My birthday is March 15th."]
        assert stored[0].memory_type is MemoryType.FACT

    asyncio.run(scenario())


def test_manager_requires_user_and_persona(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        MemoryManager(MemoryStore(tmp_path / "memory.db"), _FakeEmbedder(), user_id="", persona_id="luna")


class _FailingStore(MemoryStore):
    async def insert(self, record):  # type: ignore[no-untyped-def]
        raise StorageError("database is locked")

    async def recent(self, user_id, persona_id, limit):  # type: ignore[no-untyped-def]
        raise StorageError("database is locked")

    async def similarity_search(self, user_id, persona_id, query_embedding, limit):  # type: ignore[no-untyped-def]
        raise StorageError("database is locked")


def test_storage_failures_propagate_from_manager_operations(tmp_path: Path) -> None:
    store = _FailingStore(tmp_path / "memory.db")
    manager = _manager(tmp_path, store=store)

    async def scenario() -> None:
        await store.init()
        stored = None
        with pytest.raises(StorageError):
            stored = await manager.add_memory("User works as a nurse", MemoryType.FACT, 0.6)
        assert stored is None
        assert await manager.get_all_memories() == []

        with pytest.raises(StorageError):
            await manager.get_recent_memories()
        with pytest.raises(StorageError):
            await manager.search_memories("nurse")
        with pytest.raises(StorageError):
            await manager.retrieve_context("nurse")

    asyncio.run(scenario())


def test_record_exchange_logs_extraction_fallback(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    manager = _manager(tmp_path, extractor=MemoryExtractor(_FakeJsonLLM(None)))
    turns = [ConversationTurn(role=TurnRole.USER, content="My birthday is March 15th.")]

    async def scenario() -> None:
        await manager.store.init()
        with caplog.at_level("DEBUG", logger="persona_core"):
            stored = await manager.record_exchange(turns)
        assert [record.content for record in stored] == ["User said: My birthday is March 15th."]

    asyncio.run(scenario())
    assert "fell back to heuristics" in caplog.text
    assert "fallback=True" in caplog.text
