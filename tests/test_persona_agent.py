from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_core.errors import ConfigError, ProviderError, ProviderErrorKind  # noqa: E402
from persona_core.models import (  # noqa: E402
    AgentContext,
    ConversationTurn,
    MemoryRecord,
    MemoryType,
    PersonaDefinition,
    PersonaPersonality,
    PersonaType,
    TurnRole,
    WorldDefinition,
    WorldTheme,
)
from persona_core.persona.agent import AgentState, PersonaReasoningAgent  # noqa: E402
from persona_core.persona.emotion import (  # noqa: E402
    analyze_user_emotion,
    persona_mood,
    relationship_delta,
    temperature_for_emotion,
)

_CHUNKS = ["Hello! ", "How can I help ", "you today?"]


class _FakeLLM:
    def __init__(self, chunks: list[str] | None = None, *, error: ProviderError | None = None, delay: float = 0.0) -> None:
        self.chunks = list(chunks if chunks is not None else _CHUNKS)
        self.error = error
        self.delay = delay
        self.complete_calls: list[dict[str, object]] = []
        self.stream_calls: list[dict[str, object]] = []
        self.stream_closed = False
        self.chunks_sent = 0

    async def complete(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
        self.complete_calls.append({"system_prompt": system_prompt, "history": list(history), "temperature": temperature})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return "".join(self.chunks)

    async def stream(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
        self.stream_calls.append({"system_prompt": system_prompt, "history": list(history), "temperature": temperature})
        try:
            for index, chunk in enumerate(self.chunks):
                if self.error is not None and index == 1:
                    raise self.error
                self.chunks_sent += 1
                yield chunk
        finally:
            self.stream_closed = True


class _FakeMemory:
    def __init__(self, records: list[MemoryRecord], *, user_id: str = "u1", persona_id: str = "luna") -> None:
        self.records = records
        self.user_id = user_id
        self.persona_id = persona_id
        self.queries: list[str] = []

    async def retrieve_context(self, query_text: str) -> list[MemoryRecord]:
        self.queries.append(query_text)
        return list(self.records)


def _luna(**personality) -> PersonaDefinition:  # type: ignore[no-untyped-def]
    return PersonaDefinition(
        id="luna",
        name="Luna",
        persona_type=PersonaType.COMPANION,
        personality=PersonaPersonality(traits=["friendly", "supportive", "curious"], **personality),
    )


def _context(conversation_id: str = "c1") -> AgentContext:
    return AgentContext(user_id="u1", persona_id="luna", conversation_id=conversation_id)


def _agent(llm: _FakeLLM | None = None, **kwargs) -> PersonaReasoningAgent:  # type: ignore[no-untyped-def]
    persona = kwargs.pop("persona", None) or _luna()
    return PersonaReasoningAgent(persona, llm or _FakeLLM(), context=_context(), **kwargs)


def test_system_prompt_contains_identity_traits_and_world() -> None:
    world = WorldDefinition(id="w1", name="Neon Harbor", theme=WorldTheme.CYBER, setting="A rain-soaked port city")
    agent = _agent(world=world)

    prompt = agent.build_system_prompt()
    for expected in ("Luna", "companion", "friendly", "supportive", "curious", "Neon Harbor", "cyber"):
        assert expected in prompt
    assert prompt == agent.build_system_prompt()

    agent.set_world(None)
    assert "Neon Harbor" not in agent.build_system_prompt()


def test_system_prompt_includes_custom_instructions_and_retrieved_memories() -> None:
    persona = _luna()
    persona.system_prompt = "Always end with a question."
    memory = _FakeMemory(
        [MemoryRecord(user_id="u1", persona_id="luna", content="User has a dog named Bublyk", memory_type=MemoryType.FACT, importance=0.7)]
    )
    llm = _FakeLLM()
    agent = _agent(llm, persona=persona, memory=memory)

    asyncio.run(agent.process_message("Tell me something"))

    sent_prompt = llm.complete_calls[0]["system_prompt"]
    assert "Always end with a question." in sent_prompt  # type: ignore[operator]
    assert "User has a dog named Bublyk" in sent_prompt  # type: ignore[operator]
    assert memory.queries == ["Tell me something"]


@pytest.mark.parametrize(
    "persona",
    [
        None,
        {"id": "", "name": "Luna", "type": "companion"},
        {"id": "luna", "name": "  ", "type": "companion"},
        {"id": "luna", "name": "Luna"},
        {"id": "luna", "name": "Luna", "type": "wizard"},
    ],
)
def test_construction_rejects_incomplete_persona(persona) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(ConfigError):
        PersonaReasoningAgent(persona, _FakeLLM(), context=_context())


def test_construction_rejects_invalid_world_and_mismatched_context() -> None:
    with pytest.raises(ConfigError):
        _agent(world={"id": "w1", "name": "", "theme": "space"})
    with pytest.raises(ConfigError):
        _agent(world={"id": "w1", "name": "Orbit", "theme": "underwater"})
    with pytest.raises(ConfigError):
        PersonaReasoningAgent(
            _luna(),
            _FakeLLM(),
            context=AgentContext(user_id="u1", persona_id="someone-else", conversation_id="c1"),
        )
    with pytest.raises(ConfigError):
        _agent(memory=_FakeMemory([], user_id="u2"))


def test_hello_luna_returns_reply_and_emotional_context() -> None:
    llm = _FakeLLM()
    agent = _agent(llm)

    reply = asyncio.run(agent.process_message("Hello Luna!"))

    assert reply.content == "Hello! How can I help you today?"
    assert reply.emotional_context is not None
    assert reply.emotional_context.user_emotion == "happy"
    assert reply.emotional_context.mood
    assert len(reply.suggestions) == 3
    assert agent.state is AgentState.COMPLETED
    history = agent.get_history()
    assert [turn.role for turn in history] == [TurnRole.USER, TurnRole.ASSISTANT]
    assert history[0].content == "Hello Luna!"
    assert llm.complete_calls[0]["history"] == [{"role": "user", "content": "Hello Luna!"}]
    assert llm.complete_calls[0]["temperature"] == temperature_for_emotion("happy")


def test_streamed_reply_matches_non_streaming_reply() -> None:
    async def scenario() -> None:
        plain = await _agent(_FakeLLM()).process_message("Hello Luna!")

        streaming_agent = _agent(_FakeLLM())
        reply_stream = streaming_agent.stream_message("Hello Luna!")
        consumed = [chunk async for chunk in reply_stream]

        assert consumed == _CHUNKS
        assert "".join(consumed) == plain.content
        result = reply_stream.result
        assert result.content == plain.content
        assert result.emotional_context is not None
        assert result.emotional_context == plain.emotional_context
        assert streaming_agent.state is AgentState.COMPLETED
        assert streaming_agent.get_history()[-1].content == plain.content

    asyncio.run(scenario())


def test_stream_result_unavailable_before_exhaustion() -> None:
    async def scenario() -> None:
        reply_stream = _agent(_FakeLLM()).stream_message("Hi")
        assert reply_stream.done is False
        with pytest.raises(RuntimeError):
            _ = reply_stream.result
        await reply_stream.__anext__()
        assert reply_stream.done is False
        with pytest.raises(RuntimeError):
            _ = reply_stream.result
        await reply_stream.aclose()
        assert reply_stream.done is False

        finished = _agent(_FakeLLM()).stream_message("Hi")
        assert "".join([chunk async for chunk in finished]) == "".join(_CHUNKS)
        assert finished.done is True
        assert finished.result.content == "".join(_CHUNKS)

    asyncio.run(scenario())


def test_stopping_stream_early_releases_provider_and_records_nothing() -> None:
    llm = _FakeLLM()
    agent = _agent(llm)

    async def scenario() -> None:
        async with agent.stream_message("Hello Luna!") as reply_stream:
            async for _chunk in reply_stream:
                break
        assert llm.chunks_sent == 1
        assert llm.stream_closed is True
        history = agent.get_history()
        assert [turn.role for turn in history] == [TurnRole.USER]
        assert agent.state is not AgentState.COMPLETED
        with pytest.raises(RuntimeError):
            _ = reply_stream.result
        assert [chunk async for chunk in reply_stream] == []

    asyncio.run(scenario())


def test_cancelling_the_consumer_task_closes_provider_stream() -> None:
    class _SlowLLM(_FakeLLM):
        async def stream(self, system_prompt, history, *, temperature=None):  # type: ignore[no-untyped-def]
            try:
                yield "Hello! "
                await asyncio.sleep(10)
                yield "never"
            finally:
                self.stream_closed = True

    llm = _SlowLLM()
    agent = _agent(llm)
    received: list[str] = []

    async def consume() -> None:
        async for chunk in agent.stream_message("Hello Luna!"):
            received.append(chunk)

    async def scenario() -> None:
        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert received == ["Hello! "]
    assert llm.stream_closed is True
    assert agent.state is AgentState.FAILED
    assert [turn.role for turn in agent.get_history()] == [TurnRole.USER]


def test_stream_provider_error_marks_failed() -> None:
    llm = _FakeLLM(error=ProviderError(ProviderErrorKind.UNAVAILABLE, "connection reset"))
    agent = _agent(llm)

    async def scenario() -> None:
        received: list[str] = []
        with pytest.raises(ProviderError):
            async for chunk in agent.stream_message("Hello"):
                received.append(chunk)
        assert received == ["Hello! "]

    asyncio.run(scenario())
    assert agent.state is AgentState.FAILED
    assert llm.stream_closed is True
    assert all(turn.role is TurnRole.USER for turn in agent.get_history())


def test_process_message_propagates_provider_errors() -> None:
    agent = _agent(_FakeLLM(error=ProviderError(ProviderErrorKind.RATE_LIMITED, "429")))

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(agent.process_message("Hello"))

    assert excinfo.value.kind is ProviderErrorKind.RATE_LIMITED
    assert agent.state is AgentState.FAILED
    assert [turn.role for turn in agent.get_history()] == [TurnRole.USER]


def test_process_message_times_out_with_provider_error() -> None:
    agent = _agent(_FakeLLM(delay=5.0), timeout_seconds=0.05)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(agent.process_message("Hello"))

    assert excinfo.value.kind is ProviderErrorKind.TIMEOUT
    assert agent.state is AgentState.FAILED


def test_empty_reply_is_a_provider_error() -> None:
    agent = _agent(_FakeLLM(["   "]))
    with pytest.raises(ProviderError):
        asyncio.run(agent.process_message("Hello"))


def test_load_history_replaces_turns_and_window_is_bounded() -> None:
    llm = _FakeLLM(["ok"])
    agent = _agent(llm, max_history_turns=4)
    turns = [
        ConversationTurn(role=TurnRole.USER if i % 2 == 0 else TurnRole.ASSISTANT, content=f"turn {i}")
        for i in range(10)
    ]
    agent.load_history(turns)
    assert agent.get_history() == turns

    asyncio.run(agent.process_message("latest"))

    sent = llm.complete_calls[0]["history"]
    assert len(sent) == 4  # type: ignore[arg-type]
    assert sent[-1] == {"role": "user", "content": "latest"}  # type: ignore[index]
    assert len(agent.get_history()) == 12

    agent.clear_history()
    assert agent.get_history() == []
    assert agent.state is AgentState.IDLE
    with pytest.raises(TypeError):
        agent.load_history([{"role": "user", "content": "raw"}])  # type: ignore[list-item]


def test_emotion_helpers_follow_persona_and_lexicon() -> None:
    assert analyze_user_emotion("I'm so worried and scared about tomorrow")[0] == "anxious"
    assert analyze_user_emotion("I feel sad and lonely")[1] < 0
    assert analyze_user_emotion("What time is it")[0] == "neutral"
    assert analyze_user_emotion("this is his book")[0] == "neutral"

    caring = _luna(empathy_level="high")
    assert persona_mood(caring, "sad") == "caring"
    assert persona_mood(_luna(), "sad") == "supportive"
    mentor = PersonaDefinition(id="m", name="Sage", persona_type=PersonaType.MENTOR)
    assert persona_mood(mentor, "happy") == "proud"
    coach = PersonaDefinition(id="c", name="Max", persona_type=PersonaType.COACH)
    assert persona_mood(coach, "happy") == "engaged"

    assert relationship_delta("I love you, you are the best") == 1
    assert relationship_delta("I hate this, stop it") == -1
    assert relationship_delta("ok") == 0


def test_system_turns_do_not_take_history_window_slots() -> None:
    llm = _FakeLLM(["ok"])
    agent = _agent(llm, max_history_turns=4)
    agent.load_history(
        [
            ConversationTurn(role=TurnRole.USER, content="turn 0"),
            ConversationTurn(role=TurnRole.ASSISTANT, content="turn 1"),
            ConversationTurn(role=TurnRole.SYSTEM, content="scene changed"),
            ConversationTurn(role=TurnRole.USER, content="turn 2"),
            ConversationTurn(role=TurnRole.SYSTEM, content="mood shifted"),
            ConversationTurn(role=TurnRole.ASSISTANT, content="turn 3"),
        ]
    )

    asyncio.run(agent.process_message("latest"))

    sent = llm.complete_calls[0]["history"]
    assert [message["content"] for message in sent] == ["turn 1", "turn 2", "turn 3", "latest"]  # type: ignore[union-attr]
