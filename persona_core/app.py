from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .chat import ChatTurnHandler, ConversationRecord, InMemoryConversationRepository
from .config import Settings
from .errors import ConfigError, PersonaCoreError
from .memory.extractor import MemoryExtractor
from .memory.factory import build_memory_store
from .memory.manager import MemoryManager, MemoryPolicy
from .models import PersonaDefinition, WorldDefinition, new_id
from .services.factory import build_embedding_provider, build_language_model

logger = logging.getLogger("persona_core")

_DEFAULT_PERSONA = {
    "id": "luna",
    "name": "Luna",
    "type": "companion",
    "personality": {
        "traits": ["friendly", "supportive", "curious"],
        "speaking_style": "warm and casual",
        "empathy_level": "high",
    },
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    llm: Any
    store: Any
    repository: InMemoryConversationRepository
    handler: ChatTurnHandler
    memory_for: Callable[[str, str], MemoryManager]

    async def start(self) -> None:
        await self.store.init()
        await self.store.ping()
        logger.info("Memory store ready (backend=%s)", self.store.backend_name)
        await self.llm.start()

    async def close(self) -> None:
        await self.handler.close()
        await self.llm.close()
        await self.store.close()


def build_runtime(settings: Settings) -> Runtime:
    llm = build_language_model(settings)
    embedder = build_embedding_provider(settings, llm)
    store = build_memory_store(
        settings.sqlite_path,
        backend=settings.memory_backend,
        postgres_dsn=settings.memory_postgres_dsn,
    )
    extractor = MemoryExtractor(llm)
    policy = MemoryPolicy.from_settings(settings)

    def memory_for(user_id: str, persona_id: str) -> MemoryManager:
        return MemoryManager(
            store,
            embedder,
            user_id=user_id,
            persona_id=persona_id,
            llm=llm,
            extractor=extractor,
            policy=policy,
        )

    repository = InMemoryConversationRepository()
    handler = ChatTurnHandler(
        repository,
        llm,
        memory_factory=memory_for,
        timeout_seconds=settings.llm_timeout_seconds,
        max_history_turns=settings.max_history_turns,
        fallback_reply=settings.fallback_reply,
        consolidation_every_turns=settings.memory_consolidation_every_turns,
    )
    return Runtime(settings, llm, store, repository, handler, memory_for)


def _load_json_file(path: Path | None, default: dict[str, Any] | None) -> dict[str, Any] | None:
    if path is None:
        return default
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return payload


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="persona-core", description="Chat with a persona from the terminal.")
    parser.add_argument("--persona", type=Path, help="persona definition JSON file (defaults to Luna)")
    parser.add_argument("--world", type=Path, help="optional world definition JSON file")
    parser.add_argument("--user-id", default="local-user")
    parser.add_argument("--conversation-id", default="")
    parser.add_argument("--no-stream", action="store_true", help="wait for the full reply instead of streaming")
    return parser


async def _print_chunk(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


async def _handle_command(command: str, memory: MemoryManager) -> bool:
    if command == "/summary":
        print(await memory.generate_summary(use_model=True))
    elif command == "/memories":
        for record in await memory.get_recent_memories(20):
            print(f"[{record.memory_type.value} {record.importance:.2f}] {record.content}")
    elif command == "/consolidate":
        summaries = await memory.consolidate_memories()
        print(f"Created {len(summaries)} summaries.")
    elif command == "/export":
        print(await memory.export_memories())
    else:
        return False
    return True


async def _chat_loop(runtime: Runtime, record: ConversationRecord, *, stream: bool) -> None:
    memory = runtime.memory_for(record.user_id, record.persona.id)
    name = record.persona.name
    print(f"Chatting with {name}. Commands: /summary /memories /consolidate /export /quit")
    while True:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            break
        text = line.strip()
        if not text:
            continue
        if text in {"/quit", "/exit"}:
            break
        if text.startswith("/"):
            try:
                if not await _handle_command(text, memory):
                    print(f"Unknown command {text}")
            except PersonaCoreError as exc:
                logger.error("Command %s failed: %s", text, exc)
            continue

        if stream:
            sys.stdout.write(f"{name}> ")
            result = await runtime.handler.handle_turn(
                record.conversation_id,
                text,
                stream=True,
                on_chunk=_print_chunk,
            )
            if result.failed:
                sys.stdout.write(result.reply)
            sys.stdout.write("\n")
        else:
            result = await runtime.handler.handle_turn(record.conversation_id, text)
            print(f"{name}> {result.reply}")
        logger.debug("mood=%s user_emotion=%s", result.emotional_context.mood, result.emotional_context.user_emotion)


async def _run(settings: Settings, args: argparse.Namespace) -> None:
    persona = PersonaDefinition.from_dict(_load_json_file(args.persona, _DEFAULT_PERSONA) or {})
    world_payload = _load_json_file(args.world, None)
    world = WorldDefinition.from_dict(world_payload) if world_payload is not None else None

    runtime = build_runtime(settings)
    record = ConversationRecord(
        conversation_id=args.conversation_id or new_id(),
        user_id=args.user_id,
        persona=persona,
        world=world,
    )
    runtime.repository.add(record)
    await runtime.start()
    try:
        await _chat_loop(runtime, record, stream=not args.no_stream)
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    try:
        settings.validate()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    try:
        asyncio.run(_run(settings, args))
    except ConfigError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
