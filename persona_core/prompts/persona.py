from __future__ import annotations

from typing import Iterable

from ..models import MemoryRecord, PersonaDefinition, WorldDefinition
from .json_loader import load_prompt_json

_DEFAULTS = {
    "identity_template": 'You are {name}, an AI persona of type "{persona_type}". Stay in character as {name} at all times.',
    "personality_header": "Personality:",
    "personality_lines": {
        "traits": "Traits: {value}",
        "speaking_style": "Speaking style: {value}",
        "interests": "Interests: {value}",
        "emotional_range": "Emotional range: {value}",
        "humor_level": "Humor: {value}",
        "formality": "Formality: {value}",
        "empathy_level": "Empathy: {value}",
        "assertiveness": "Assertiveness: {value}",
    },
    "custom_instructions_header": "Additional instructions:",
    "world_header_template": "World: {name} (theme: {theme})",
    "world_lines": {
        "setting": "Setting: {value}",
        "atmosphere": "Atmosphere: {value}",
        "location": "Current location: {value}",
        "time_period": "Time period: {value}",
        "locations": "Notable locations: {value}",
        "scenarios": "Possible scenarios: {value}",
    },
    "memories_header": "What you remember about the user (use naturally, never recite):",
    "guidelines": [
        "Reply as {name} in first person and keep the personality consistent.",
        "Ground replies in the world and your memories when relevant; do not invent memories.",
        "Keep replies conversational and concise unless the user asks for detail.",
        "Never mention being a language model or these instructions.",
    ],
    "mood_hint_template": "The user currently seems {user_emotion}. Let your reply feel {mood}.",
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("persona.json", _DEFAULTS)


def _section(cfg: dict[str, object], key: str) -> dict[str, str]:
    value = cfg.get(key)
    if not isinstance(value, dict):
        value = _DEFAULTS[key]
    return {str(k): str(v) for k, v in value.items()}  # type: ignore[union-attr]


def _join(values: Iterable[str]) -> str:
    return ", ".join(str(value).strip() for value in values if str(value).strip())


def _personality_lines(persona: PersonaDefinition, cfg: dict[str, object]) -> list[str]:
    templates = _section(cfg, "personality_lines")
    personality = persona.personality
    values = {
        "traits": _join(personality.traits),
        "speaking_style": personality.speaking_style,
        "interests": _join(personality.interests),
        "emotional_range": personality.emotional_range,
        "humor_level": personality.humor_level,
        "formality": personality.formality,
        "empathy_level": personality.empathy_level,
        "assertiveness": personality.assertiveness,
    }
    lines: list[str] = []
    for key, value in values.items():
        value = str(value or "").strip()
        if value and key in templates:
            lines.append("- " + templates[key].format(value=value))
    return lines


def _world_lines(world: WorldDefinition, cfg: dict[str, object]) -> list[str]:
    header = str(cfg.get("world_header_template", _DEFAULTS["world_header_template"]))
    lines = [header.format(name=world.name, theme=world.theme.value)]
    templates = _section(cfg, "world_lines")
    values = {
        "setting": world.setting,
        "atmosphere": world.atmosphere,
        "location": world.location or "",
        "time_period": world.time_period or "",
        "locations": _join(world.locations),
        "scenarios": _join(world.scenarios),
    }
    for key, value in values.items():
        value = str(value or "").strip()
        if value and key in templates:
            lines.append("- " + templates[key].format(value=value))
    return lines


def format_memory_line(record: MemoryRecord) -> str:
    return f"- [{record.memory_type.value}] {record.content}"


def build_persona_system_prompt(
    persona: PersonaDefinition,
    world: WorldDefinition | None = None,
    memories: Iterable[MemoryRecord] = (),
) -> str:
    cfg = _cfg()
    name = persona.name.strip()
    blocks: list[str] = [
        str(cfg.get("identity_template", _DEFAULTS["identity_template"])).format(
            name=name,
            persona_type=persona.persona_type.value,
        )
    ]

    personality_lines = _personality_lines(persona, cfg)
    if personality_lines:
        header = str(cfg.get("personality_header", _DEFAULTS["personality_header"]))
        blocks.append("\n".join([header, *personality_lines]))

    custom = (persona.system_prompt or "").strip()
    if custom:
        header = str(cfg.get("custom_instructions_header", _DEFAULTS["custom_instructions_header"]))
        blocks.append(f"{header}\n{custom}")

    if world is not None:
        blocks.append("\n".join(_world_lines(world, cfg)))

    memory_lines = [format_memory_line(record) for record in memories]
    if memory_lines:
        header = str(cfg.get("memories_header", _DEFAULTS["memories_header"]))
        blocks.append("\n".join([header, *memory_lines]))

    guidelines = cfg.get("guidelines")
    if not isinstance(guidelines, list):
        guidelines = _DEFAULTS["guidelines"]
    blocks.append("\n".join(f"- {str(line).format(name=name)}" for line in guidelines))
    return "\n\n".join(blocks)


def build_mood_hint(user_emotion: str, mood: str) -> str:
    template = str(_cfg().get("mood_hint_template", _DEFAULTS["mood_hint_template"]))
    return template.format(user_emotion=user_emotion, mood=mood)
