from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .errors import ConfigError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _coerce_enum(enum_cls: type[Enum], value: object, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ConfigError(f"Unknown {field_name} {value!r} (expected one of: {allowed})") from None


class PersonaType(str, Enum):
    COMPANION = "companion"
    ROMANTIC = "romantic"
    FRIEND = "friend"
    MENTOR = "mentor"
    TRAINER = "trainer"
    STRATEGIST = "strategist"
    HYPE = "hype"
    ADVISOR = "advisor"
    COACH = "coach"
    CREATIVE = "creative"
    ROLEPLAY = "roleplay"
    CUSTOM = "custom"


class WorldTheme(str, Enum):
    CYBER = "cyber"
    RETRO = "retro"
    TROPICAL = "tropical"
    SPACE = "space"
    LUXURY = "luxury"
    FANTASY = "fantasy"
    HORROR = "horror"
    ROMANCE = "romance"
    ADVENTURE = "adventure"
    CUSTOM = "custom"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryType(str, Enum):
    FACT = "fact"
    EMOTION = "emotion"
    PREFERENCE = "preference"
    EVENT = "event"
    RELATIONSHIP = "relationship"
    OTHER = "other"
    SUMMARY = "summary"


class ContentType(str, Enum):
    MUSIC = "music"
    VIDEO = "video"
    IMAGE = "image"
    MEME = "meme"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class PersonaPersonality:
    traits: list[str] = field(default_factory=list)
    speaking_style: str = ""
    interests: list[str] = field(default_factory=list)
    emotional_range: str = ""
    humor_level: str = ""
    formality: str = ""
    empathy_level: str = "medium"
    assertiveness: str = ""


@dataclass(slots=True)
class PersonaDefinition:
    id: str
    name: str
    persona_type: PersonaType
    personality: PersonaPersonality = field(default_factory=PersonaPersonality)
    system_prompt: str | None = None
    voice_id: str | None = None
    world_id: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PersonaDefinition":
        raw_personality = payload.get("personality") or {}
        if not isinstance(raw_personality, Mapping):
            raise ConfigError("Persona personality must be an object")
        personality = PersonaPersonality(
            traits=[str(item) for item in raw_personality.get("traits") or []],
            speaking_style=str(raw_personality.get("speaking_style", raw_personality.get("speakingStyle", "")) or ""),
            interests=[str(item) for item in raw_personality.get("interests") or []],
            emotional_range=str(raw_personality.get("emotional_range", raw_personality.get("emotionalRange", "")) or ""),
            humor_level=str(raw_personality.get("humor_level", raw_personality.get("humorLevel", "")) or ""),
            formality=str(raw_personality.get("formality", "") or ""),
            empathy_level=str(raw_personality.get("empathy_level", raw_personality.get("empathyLevel", "medium")) or "medium"),
            assertiveness=str(raw_personality.get("assertiveness", "") or ""),
        )
        raw_type = payload.get("persona_type", payload.get("type"))
        if raw_type is None:
            raise ConfigError("Persona type is required")
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            persona_type=_coerce_enum(PersonaType, raw_type, "persona type"),
            personality=personality,
            system_prompt=payload.get("system_prompt", payload.get("systemPrompt")),
            voice_id=payload.get("voice_id", payload.get("voiceId")),
            world_id=payload.get("world_id", payload.get("worldId")),
        )


@dataclass(slots=True)
class WorldDefinition:
    id: str
    name: str
    theme: WorldTheme
    setting: str = ""
    atmosphere: str = ""
    time_period: str | None = None
    location: str | None = None
    scenarios: list[str] = field(default_factory=list)
    locations: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WorldDefinition":
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            theme=_coerce_enum(WorldTheme, payload.get("theme"), "world theme"),
            setting=str(payload.get("setting") or ""),
            atmosphere=str(payload.get("atmosphere") or ""),
            time_period=payload.get("time_period", payload.get("timePeriod")),
            location=payload.get("location"),
            scenarios=[str(item) for item in payload.get("scenarios") or []],
            locations=[str(item) for item in payload.get("locations") or []],
        )


@dataclass(slots=True, frozen=True)
class AgentContext:
    user_id: str
    persona_id: str
    conversation_id: str
    world_id: str | None = None


@dataclass(slots=True)
class ConversationTurn:
    role: TurnRole
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(slots=True)
class MemoryRecord:
    user_id: str
    persona_id: str
    content: str
    memory_type: MemoryType
    importance: float
    embedding: list[float] | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    consolidated_into: str | None = None
    source_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "persona_id": self.persona_id,
            "content": self.content,
            "type": self.memory_type.value,
            "importance": self.importance,
            "embedding": self.embedding,
            "created_at": self.created_at.isoformat(),
            "consolidated_into": self.consolidated_into,
            "source_ids": list(self.source_ids),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MemoryRecord":
        created_raw = payload.get("created_at")
        if isinstance(created_raw, datetime):
            created_at = created_raw
        elif created_raw:
            created_at = datetime.fromisoformat(str(created_raw))
        else:
            created_at = utc_now()
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        embedding = payload.get("embedding")
        return cls(
            id=str(payload.get("id") or new_id()),
            user_id=str(payload["user_id"]),
            persona_id=str(payload["persona_id"]),
            content=str(payload["content"]),
            memory_type=MemoryType(str(payload.get("type", MemoryType.OTHER.value))),
            importance=float(payload.get("importance", 0.5)),
            embedding=[float(value) for value in embedding] if embedding else None,
            created_at=created_at,
            consolidated_into=payload.get("consolidated_into"),
            source_ids=[str(item) for item in payload.get("source_ids") or []],
        )


@dataclass(slots=True, frozen=True)
class MemoryClassification:
    memory_type: MemoryType
    confidence_hint: float


@dataclass(slots=True, frozen=True)
class EmotionalContext:
    mood: str
    user_emotion: str = "neutral"
    valence: float = 0.0
    intensity: float = 0.0


@dataclass(slots=True)
class AgentReply:
    content: str
    emotional_context: EmotionalContext
    suggestions: list[str] = field(default_factory=list)
    relationship_delta: int = 0


@dataclass(slots=True)
class GenerationJob:
    id: str
    content_type: ContentType
    status: GenerationStatus
    result_url: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in {GenerationStatus.COMPLETED, GenerationStatus.FAILED}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GenerationJob":
        job_id = str(payload.get("id") or "").strip()
        if not job_id:
            raise ConfigError("Generation job id is required")
        result_url = payload.get("result_url", payload.get("resultUrl"))
        return cls(
            id=job_id,
            content_type=_coerce_enum(ContentType, payload.get("type", payload.get("content_type")), "content type"),
            status=_coerce_enum(GenerationStatus, payload.get("status", "pending"), "generation status"),
            result_url=str(result_url) if result_url else None,
        )
