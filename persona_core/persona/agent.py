from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Mapping

from ..errors import ConfigError, ProviderError, ProviderErrorKind
from ..models import (
    AgentContext,
    AgentReply,
    ConversationTurn,
    EmotionalContext,
    MemoryRecord,
    PersonaDefinition,
    PersonaType,
    TurnRole,
    WorldDefinition,
    WorldTheme,
)
from ..prompts.persona import build_mood_hint, build_persona_system_prompt
from ..services.base import LanguageModel
from .emotion import emotional_context_for, relationship_delta, suggestions_for, temperature_for_emotion

logger = logging.getLogger("persona_core")


class AgentState(str, Enum):
    IDLE = "idle"
    BUILDING_CONTEXT = "building_context"
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


def _blank(value: object) -> bool:
    return not str(value or "").strip()


def _validated_persona(persona: PersonaDefinition | Mapping[str, Any] | None) -> PersonaDefinition:
    if persona is None:
        raise ConfigError("A persona definition is required")
    if isinstance(persona, Mapping):
        persona = PersonaDefinition.from_dict(persona)
    missing = [name for name in ("id", "name") if _blank(getattr(persona, name, None))]
    if missing:
        raise ConfigError(f"Persona is missing required fields: {', '.join(missing)}")
    if not isinstance(persona.persona_type, PersonaType):
        raise ConfigError(f"Persona {persona.id!r} has no valid type")
    return persona


def _validated_world(world: WorldDefinition | Mapping[str, Any] | None) -> WorldDefinition | None:
    if world is None:
        return None
    if isinstance(world, Mapping):
        world = WorldDefinition.from_dict(world)
    if _blank(world.name):
        raise ConfigError("World is missing its name")
    if not isinstance(world.theme, WorldTheme):
        raise ConfigError(f"World {world.name!r} has no valid theme")
    return world


class PersonaReasoningAgent:
    """Produces persona-consistent replies for one conversation.

    An agent owns its working history. It is built per request from the
    persona, the optional world and the conversation identifiers, and is not
    meant to be shared across conversations.
    """

    def __init__(
        self,
        persona: PersonaDefinition | Mapping[str, Any] | None,
        llm: LanguageModel,
        *,
        context: AgentContext,
        world: WorldDefinition | Mapping[str, Any] | None = None,
        memory: Any | None = None,
        timeout_seconds: float = 60.0,
        max_history_turns: int = 20,
    ) -> None:
        self.persona = _validated_persona(persona)
        self.world = _validated_world(world)
        if context is None or _blank(context.user_id) or _blank(context.conversation_id):
            raise ConfigError("Agent context requires user_id and conversation_id")
        if str(context.persona_id) != str(self.persona.id):
            raise ConfigError(
                f"Agent context persona {context.persona_id!r} does not match persona {self.persona.id!r}"
            )
        if memory is not None and (memory.user_id, memory.persona_id) != (context.user_id, context.persona_id):
            raise ConfigError("Memory manager is scoped to a different user/persona pair")
        self.llm = llm
        self.context = context
        self.memory = memory
        self.timeout_seconds = float(timeout_seconds)
        self.max_history_turns = max(2, int(max_history_turns))
        self.state = AgentState.IDLE
        self._history: list[ConversationTurn] = []
        self._memories: list[MemoryRecord] = []

    def build_system_prompt(self) -> str:
        return build_persona_system_prompt(self.persona, self.world, self._memories)

    def load_history(self, turns: Iterable[ConversationTurn]) -> None:
        loaded = list(turns)
        for turn in loaded:
            if not isinstance(turn, ConversationTurn):
                raise TypeError(f"Expected ConversationTurn, got {type(turn).__name__}")
        self._history = loaded
        self.state = AgentState.IDLE

    def get_history(self) -> list[ConversationTurn]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history = []
        self._memories = []
        self.state = AgentState.IDLE

    def set_world(self, world: WorldDefinition | Mapping[str, Any] | None) -> None:
        self.world = _validated_world(world)

    def _history_messages(self) -> list[dict[str, str]]:
        dialogue = [turn for turn in self._history if turn.role is not TurnRole.SYSTEM and turn.content]
        return [turn.as_message() for turn in dialogue[-self.max_history_turns :]]

    async def _prepare(self, user_text: str) -> tuple[str, list[dict[str, str]], EmotionalContext]:
        text = (user_text or "").strip()
        if not text:
            raise ValueError("Message text cannot be empty")
        self.state = AgentState.BUILDING_CONTEXT
        self._history.append(ConversationTurn(role=TurnRole.USER, content=text))
        emotional = emotional_context_for(self.persona, text)
        try:
            if self.memory is not None:
                self._memories = await self.memory.retrieve_context(text)
        except BaseException:
            self.state = AgentState.FAILED
            raise

        system_prompt = self.build_system_prompt()
        if emotional.user_emotion != "neutral":
            system_prompt = f"{system_prompt}\n\n{build_mood_hint(emotional.user_emotion, emotional.mood)}"
        messages = self._history_messages()
        logger.debug(
            "Prepared turn for conversation=%s: %s history messages, %s memories, prompt %s chars",
            self.context.conversation_id,
            len(messages),
            len(self._memories),
            len(system_prompt),
        )
        return system_prompt, messages, emotional

    def _finalize(self, user_text: str, content: str, emotional: EmotionalContext) -> AgentReply:
        self._history.append(ConversationTurn(role=TurnRole.ASSISTANT, content=content))
        self.state = AgentState.COMPLETED
        logger.info(
            "Persona %s replied in conversation=%s (%s chars, mood=%s)",
            self.persona.name,
            self.context.conversation_id,
            len(content),
            emotional.mood,
        )
        return AgentReply(
            content=content,
            emotional_context=emotional,
            suggestions=suggestions_for(emotional.user_emotion),
            relationship_delta=relationship_delta(user_text),
        )

    async def process_message(self, user_text: str) -> AgentReply:
        system_prompt, messages, emotional = await self._prepare(user_text)
        self.state = AgentState.AWAITING_MODEL
        try:
            content = await asyncio.wait_for(
                self.llm.complete(
                    system_prompt,
                    messages,
                    temperature=temperature_for_emotion(emotional.user_emotion),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.state = AgentState.FAILED
            raise ProviderError(
                ProviderErrorKind.TIMEOUT,
                f"Language model did not answer within {self.timeout_seconds:g}s",
            ) from exc
        except BaseException:
            self.state = AgentState.FAILED
            raise
        if not (content or "").strip():
            self.state = AgentState.FAILED
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Language model returned an empty reply")
        return self._finalize(user_text, content, emotional)

    def stream_message(self, user_text: str) -> "ReplyStream":
        return ReplyStream(self, user_text)


class ReplyStream:
    """Lazy, single-use sequence of reply chunks.

    Nothing is sent to the model until the first chunk is requested. After the
    sequence is exhausted ``result`` holds the same ``AgentReply`` that
    ``process_message`` would have produced. Closing it early releases the
    provider stream and records no assistant turn.
    """

    def __init__(self, agent: PersonaReasoningAgent, user_text: str) -> None:
        self._agent = agent
        self._user_text = user_text
        self._source: AsyncIterator[str] | None = None
        self._emotional: EmotionalContext | None = None
        self._chunks: list[str] = []
        self._result: AgentReply | None = None
        self._closed = False

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> AgentReply:
        if self._result is None:
            raise RuntimeError("Reply stream has not been fully consumed")
        return self._result

    def __aiter__(self) -> "ReplyStream":
        return self

    async def __aenter__(self) -> "ReplyStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def __anext__(self) -> str:
        if self._closed or self._result is not None:
            raise StopAsyncIteration
        agent = self._agent
        try:
            if self._source is None:
                system_prompt, messages, self._emotional = await agent._prepare(self._user_text)
                agent.state = AgentState.AWAITING_MODEL
                self._source = agent.llm.stream(
                    system_prompt,
                    messages,
                    temperature=temperature_for_emotion(self._emotional.user_emotion),
                ).__aiter__()
            while True:
                try:
                    chunk = await self._source.__anext__()
                except StopAsyncIteration:
                    break
                agent.state = AgentState.STREAMING
                if chunk:
                    self._chunks.append(chunk)
                    return chunk
        except BaseException:
            agent.state = AgentState.FAILED
            self._closed = True
            await self._release()
            raise

        self._closed = True
        content = self.text
        if not content.strip():
            agent.state = AgentState.FAILED
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Language model returned an empty reply")
        assert self._emotional is not None
        self._result = agent._finalize(self._user_text, content, self._emotional)
        raise StopAsyncIteration

    async def _release(self) -> None:
        source, self._source = self._source, None
        closer = getattr(source, "aclose", None)
        if closer is not None:
            await closer()

    async def aclose(self) -> None:
        if self._result is not None or self._closed:
            return
        self._closed = True
        await self._release()
        if self._emotional is not None:
            self._agent.state = AgentState.FAILED
            logger.info(
                "Reply stream for conversation=%s closed after %s chunks; partial reply discarded",
                self._agent.context.conversation_id,
                len(self._chunks),
            )
