from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from .errors import ClassificationError, ConfigError, ProviderError, StorageError
from .memory.manager import MemoryManager
from .models import AgentContext, AgentReply, ConversationTurn, EmotionalContext, PersonaDefinition, WorldDefinition
from .persona.agent import PersonaReasoningAgent
from .persona.emotion import emotional_context_for
from .services.base import LanguageModel

logger = logging.getLogger("persona_core")

ChunkCallback = Callable[[str], Awaitable[None]]
MemoryFactory = Callable[[str, str], MemoryManager]


@dataclass(slots=True)
class TurnResult:
    reply: str
    emotional_context: EmotionalContext
    streamed: bool
    failed: bool = False
    suggestions: list[str] = field(default_factory=list)
    relationship_delta: int = 0


@dataclass(slots=True)
class ConversationRecord:
    conversation_id: str
    user_id: str
    persona: PersonaDefinition
    world: WorldDefinition | None = None
    turns: list[ConversationTurn] = field(default_factory=list)


class ConversationRepository(Protocol):
    async def get_conversation(self, conversation_id: str) -> ConversationRecord: ...

    async def append_turns(self, conversation_id: str, turns: list[ConversationTurn]) -> None: ...


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._records: dict[str, ConversationRecord] = {}

    def add(self, record: ConversationRecord) -> None:
        self._records[record.conversation_id] = record

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        record = self._records.get(conversation_id)
        if record is None:
            raise ConfigError(f"Unknown conversation {conversation_id!r}")
        return record

    async def append_turns(self, conversation_id: str, turns: list[ConversationTurn]) -> None:
        record = await self.get_conversation(conversation_id)
        record.turns.extend(turns)


class ChatTurnHandler:
    """Runs one chat turn per call, serialized per conversation.

    Provider and storage failures become the fallback reply. Memory extraction
    and consolidation run after the reply is finalized, in a background task
    chained per conversation so they apply in turn order.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        llm: LanguageModel,
        *,
        memory_factory: MemoryFactory | None = None,
        timeout_seconds: float = 60.0,
        max_history_turns: int = 20,
        fallback_reply: str = "I couldn't process that, please try again.",
        consolidation_every_turns: int = 20,
    ) -> None:
        self.repository = repository
        self.llm = llm
        self.memory_factory = memory_factory
        self.timeout_seconds = timeout_seconds
        self.max_history_turns = max_history_turns
        self.fallback_reply = fallback_reply
        self.consolidation_every_turns = max(0, int(consolidation_every_turns))
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._turn_counts: dict[str, int] = defaultdict(int)
        self._memory_tasks: dict[str, asyncio.Task[None]] = {}

    def _build_agent(self, record: ConversationRecord) -> PersonaReasoningAgent:
        memory = None
        if self.memory_factory is not None:
            memory = self.memory_factory(record.user_id, record.persona.id)
        agent = PersonaReasoningAgent(
            record.persona,
            self.llm,
            world=record.world,
            context=AgentContext(
                user_id=record.user_id,
                persona_id=record.persona.id,
                conversation_id=record.conversation_id,
                world_id=record.world.id if record.world is not None else None,
            ),
            memory=memory,
            timeout_seconds=self.timeout_seconds,
            max_history_turns=self.max_history_turns,
        )
        agent.load_history(record.turns)
        return agent

    async def _run_agent(
        self,
        agent: PersonaReasoningAgent,
        user_text: str,
        *,
        stream: bool,
        on_chunk: ChunkCallback | None,
    ) -> AgentReply:
        if not stream:
            return await agent.process_message(user_text)
        async with agent.stream_message(user_text) as reply_stream:
            async for chunk in reply_stream:
                if on_chunk is not None:
                    await on_chunk(chunk)
            return reply_stream.result

    async def handle_turn(
        self,
        conversation_id: str,
        user_text: str,
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
    ) -> TurnResult:
        async with self._locks[conversation_id]:
            record = await self.repository.get_conversation(conversation_id)
            agent = self._build_agent(record)
            known_turns = len(record.turns)
            try:
                reply = await self._run_agent(agent, user_text, stream=stream, on_chunk=on_chunk)
                new_turns = agent.get_history()[known_turns:]
                await self.repository.append_turns(conversation_id, new_turns)
            except (ProviderError, StorageError) as exc:
                logger.exception("Chat turn failed for conversation=%s: %s", conversation_id, exc)
                return TurnResult(
                    reply=self.fallback_reply,
                    emotional_context=emotional_context_for(record.persona, user_text),
                    streamed=False,
                    failed=True,
                )

            if agent.memory is not None:
                self._schedule_memory_update(conversation_id, agent.memory, new_turns)
            return TurnResult(
                reply=reply.content,
                emotional_context=reply.emotional_context,
                streamed=stream,
                suggestions=reply.suggestions,
                relationship_delta=reply.relationship_delta,
            )

    def _schedule_memory_update(
        self,
        conversation_id: str,
        memory: MemoryManager,
        turns: list[ConversationTurn],
    ) -> None:
        self._turn_counts[conversation_id] += 1
        count = self._turn_counts[conversation_id]
        consolidate = self.consolidation_every_turns > 0 and count % self.consolidation_every_turns == 0
        previous = self._memory_tasks.get(conversation_id)
        task = asyncio.create_task(
            self._update_memory(conversation_id, memory, turns, consolidate, previous),
            name=f"memory-update:{conversation_id}",
        )
        self._memory_tasks[conversation_id] = task
        task.add_done_callback(lambda done: self._forget_task(conversation_id, done))

    def _forget_task(self, conversation_id: str, task: asyncio.Task[None]) -> None:
        if self._memory_tasks.get(conversation_id) is task:
            del self._memory_tasks[conversation_id]

    async def _update_memory(
        self,
        conversation_id: str,
        memory: MemoryManager,
        turns: list[ConversationTurn],
        consolidate: bool,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            stored = await memory.record_exchange(turns)
            if stored:
                logger.info("Stored %s new memories for conversation=%s", len(stored), conversation_id)
            if consolidate:
                summaries = await memory.consolidate_memories()
                logger.info(
                    "Consolidation for conversation=%s produced %s summaries",
                    conversation_id,
                    len(summaries),
                )
        except (ProviderError, StorageError, ClassificationError) as exc:
            logger.exception("Memory update failed for conversation=%s: %s", conversation_id, exc)

    async def drain(self) -> None:
        """Wait for all pending memory updates."""
        while self._memory_tasks:
            await asyncio.wait(list(self._memory_tasks.values()))

    async def close(self) -> None:
        await self.drain()
