from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_core.chat import ChatTurnHandler, ConversationRecord, InMemoryConversationRepository  # noqa: E402
from persona_core.errors import ConfigError, ProviderError, ProviderErrorKind, StorageError  # noqa: E402
from persona_core.memory.extractor import MemoryExtractor  # noqa: E402
from persona_core.memory.manager import MemoryManager, MemoryPolicy  # noqa: E402
from persona_core.memory.store import MemoryStore  # noqa: E402
from persona_core.models import PersonaDefinition, PersonaPersonality, PersonaType, TurnRole  # noqa: E402

_FALLBACK = "I couldn't process that, please try again."


class _FakeLLM:
    def __init__(self, replies: list[str | Exception] | None = None, *, delay: float = 0.0) -> None:
        self.replies = list(replies or [])
        self.delay = delay
        self.histories: list[list[dict[str, str]]] = []
        self.active = 0
        self.max_active = 0

    def _next_reply(self) -> str:
        reply: str | Exception = self.replies.pop(0) if self.replies else "Hello! How can I help you today?"
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def complete(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
        self.histories.append(list(history))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._next_reply()
        finally:
            self.active -= 1

    async def stream(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
        self.histories.append(list(history))
        for chunk in ("Hello! ", "How can I help ", "you today?"):
            yield chunk


class _FakeEmbedder:
    async def embed(self, text: str) -> list[float]:
        return [float(len(text) % 7), 1.0]


class _FakeJsonLLM:
    async def json_chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        return {"memories": [{"type": "fact", "content": "User works as a nurse", "importance": 0.8}]}


class _BrokenRepository(InMemoryConversationRepository):
    async def append_turns(self, conversation_id, turns):  # type: ignore[no-untyped-def]
        raise StorageError("conversation table locked")


def _luna() -> PersonaDefinition:
    return PersonaDefinition(
        id="luna",
        name="Luna",
        persona_type=PersonaType.COMPANION,
        personality=PersonaPersonality(traits=["friendly", "supportive", "curious"]),
    )


def _repository(*conversation_ids: str, repository: InMemoryConversationRepository | None = None):  # type: ignore[no-untyped-def]
    repo = repository or InMemoryConversationRepository()
    for conversation_id in conversation_ids or ("c1",):
        repo.add(ConversationRecord(conversation_id=conversation_id, user_id="u1", persona=_luna()))
    return repo


def test_handle_turn_returns_reply_and_persists_both_turns() -> None:
    repo = _repository()
    handler = ChatTurnHandler(repo, _FakeLLM())

    async def scenario() -> None:
        result = await handler.handle_turn("c1", "Hello Luna!")
        assert result.reply == "Hello! How can I help you today?"
        assert result.emotional_context is not None
        assert result.streamed is False
        assert result.failed is False
        record = await repo.get_conversation("c1")
        assert [turn.role for turn in record.turns] == [TurnRole.USER, TurnRole.ASSISTANT]

    asyncio.run(scenario())


def test_handle_turn_streams_chunks_to_callback() -> None:
    handler = ChatTurnHandler(_repository(), _FakeLLM())
    received: list[str] = []

    async def on_chunk(chunk: str) -> None:
        received.append(chunk)

    result = asyncio.run(handler.handle_turn("c1", "Hello Luna!", stream=True, on_chunk=on_chunk))

    assert result.streamed is True
    assert "".join(received) == result.reply == "Hello! How can I help you today?"


def test_provider_failure_becomes_fallback_reply(caplog: pytest.LogCaptureFixture) -> None:
    repo = _repository()
    handler = ChatTurnHandler(repo, _FakeLLM([ProviderError(ProviderErrorKind.UNAVAILABLE, "503 from upstream")]))

    async def scenario() -> None:
        with caplog.at_level("ERROR", logger="persona_core"):
            result = await handler.handle_turn("c1", "Hello Luna!")
        assert result.reply == _FALLBACK
        assert result.failed is True
        assert result.emotional_context is not None
        assert (await repo.get_conversation("c1")).turns == []

    asyncio.run(scenario())
    assert "503 from upstream" in caplog.text


def test_storage_failure_becomes_fallback_reply() -> None:
    repo = _repository(repository=_BrokenRepository())
    handler = ChatTurnHandler(repo, _FakeLLM(), fallback_reply="Try again later.")

    result = asyncio.run(handler.handle_turn("c1", "Hello Luna!"))

    assert result.reply == "Try again later."
    assert result.failed is True


def test_unknown_conversation_is_a_config_error() -> None:
    handler = ChatTurnHandler(_repository(), _FakeLLM())
    with pytest.raises(ConfigError):
        asyncio.run(handler.handle_turn("missing", "Hello"))


def test_turns_on_one_conversation_are_serialized() -> None:
    repo = _repository("c1", "c2")
    llm = _FakeLLM(["first", "second", "third"], delay=0.02)
    handler = ChatTurnHandler(repo, llm)

    async def scenario() -> None:
        await asyncio.gather(
            handler.handle_turn("c1", "one"),
            handler.handle_turn("c1", "two"),
        )
        assert llm.max_active == 1
        turns = (await repo.get_conversation("c1")).turns
        assert [turn.content for turn in turns] == ["one", "first", "two", "second"]
        assert llm.histories[1][:2] == [
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "first"},
        ]

        llm.max_active = 0
        llm.replies = ["a", "b"]
        await asyncio.gather(handler.handle_turn("c1", "three"), handler.handle_turn("c2", "hello"))
        assert llm.max_active == 2

    asyncio.run(scenario())


def test_memory_is_recorded_after_reply_and_consolidation_scheduled(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    managers: list[MemoryManager] = []
    consolidations: list[int] = []

    class _CountingManager(MemoryManager):
        async def consolidate_memories(self):  # type: ignore[no-untyped-def]
            consolidations.append(1)
            return await super().consolidate_memories()

    def memory_factory(user_id: str, persona_id: str) -> MemoryManager:
        manager = _CountingManager(
            store,
            _FakeEmbedder(),
            user_id=user_id,
            persona_id=persona_id,
            extractor=MemoryExtractor(_FakeJsonLLM()),
            policy=MemoryPolicy(),
        )
        managers.append(manager)
        return manager

    handler = ChatTurnHandler(_repository(), _FakeLLM(), memory_factory=memory_factory, consolidation_every_turns=2)

    async def scenario() -> None:
        await store.init()
        await handler.handle_turn("c1", "I'm a nurse, just got home.")
        await handler.handle_turn("c1", "Long shift today.")
        await handler.close()
        memories = await managers[0].get_all_memories()
        assert [record.content for record in memories] == ["User works as a nurse"]
        assert consolidations == [1]

    asyncio.run(scenario())
