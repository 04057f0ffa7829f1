from __future__ import annotations

import json
from typing import Iterable

from .json_loader import load_prompt_json

_DEFAULTS = {
    "extractor_schema_hint_object": {
        "memories": [
            {
                "type": "fact|emotion|preference|event|relationship",
                "content": "one short third-person statement about the user",
                "importance": 0.0,
            }
        ]
    },
    "extractor_system_prompt": (
        "You maintain long-term memory for an AI companion. "
        "From the exchange below, extract new things worth remembering about the user: "
        "biographical facts, preferences, emotional states, notable events, and relationship milestones. "
        "Write each memory as a short third-person statement starting with 'User'. "
        "Rate importance from 0 to 1 (life events near 0.9, durable facts 0.6-0.8, passing remarks below 0.3). "
        "Skip greetings, small talk, and anything already listed under known memories. "
        "If nothing is worth remembering, return memories: []."
    ),
    "extractor_user_prompt_template": (
        "Known memories:\n{known_memories}\n\n"
        "Recent exchange (oldest -> newest):\n{dialogue_lines}\n\n"
        "Return JSON."
    ),
    "consolidation_system_prompt": (
        "You compress several low-importance memories about the same user into one concise statement. "
        "Keep every distinct detail that could matter later, drop repetition, and do not add anything new. "
        "Answer with the statement only, max {max_chars} chars."
    ),
    "consolidation_user_prompt_template": "Memory type: {memory_type}\nMemories (oldest -> newest):\n{memory_lines}",
    "relationship_summary_system_prompt": (
        "You write a short, warm narrative summary of what a companion persona knows about a user. "
        "Use only the memories provided, mention the most important ones first, and keep it under {max_chars} chars."
    ),
    "relationship_summary_user_prompt_template": "Memories (most important first):\n{memory_lines}",
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _text(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def _lines(values: Iterable[str], empty: str) -> str:
    joined = "\n".join(str(value) for value in values if str(value))
    return joined or empty


def extractor_schema_hint() -> str:
    schema = _cfg().get("extractor_schema_hint_object")
    if not isinstance(schema, dict):
        schema = _DEFAULTS["extractor_schema_hint_object"]
    return json.dumps(schema, ensure_ascii=False, separators=(",", ":"))


def extractor_system_prompt() -> str:
    return _text("extractor_system_prompt")


def build_extractor_user_prompt(dialogue_lines: Iterable[str], known_memories: Iterable[str]) -> str:
    return _text("extractor_user_prompt_template").format(
        dialogue_lines=_lines(dialogue_lines, "(empty)"),
        known_memories=_lines((f"- {item}" for item in known_memories), "(none)"),
    )


def consolidation_system_prompt(max_chars: int) -> str:
    return _text("consolidation_system_prompt").format(max_chars=max_chars)


def build_consolidation_user_prompt(memory_type: str, contents: Iterable[str]) -> str:
    return _text("consolidation_user_prompt_template").format(
        memory_type=memory_type,
        memory_lines=_lines((f"- {item}" for item in contents), "(none)"),
    )


def relationship_summary_system_prompt(max_chars: int) -> str:
    return _text("relationship_summary_system_prompt").format(max_chars=max_chars)


def build_relationship_summary_user_prompt(memory_lines: Iterable[str]) -> str:
    return _text("relationship_summary_user_prompt_template").format(
        memory_lines=_lines(memory_lines, "(none)"),
    )
