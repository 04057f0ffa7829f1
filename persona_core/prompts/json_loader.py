from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("persona_core.prompts")

_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompt_data_dir() -> Path:
    """Directory holding prompt overrides; PERSONA_PROMPTS_DIR replaces the bundled one."""
    override = os.getenv("PERSONA_PROMPTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def clear_prompt_cache() -> None:
    _CACHE.clear()


def _merge_known_keys(defaults: dict[str, Any], override: dict[str, Any], source: Path) -> dict[str, Any]:
    # Only keys with a default are honoured and each must keep the default's JSON type.
    merged = copy.deepcopy(defaults)
    for key, value in override.items():
        if key not in defaults:
            logger.warning("Ignoring unknown prompt key %r in %s", key, source)
            continue
        expected = type(defaults[key])
        if not isinstance(value, expected):
            logger.warning(
                "Prompt key %r in %s must be %s, got %s (using default)",
                key,
                source,
                expected.__name__,
                type(value).__name__,
            )
            continue
        if isinstance(value, dict):
            merged[key] = _merge_known_keys(defaults[key], value, source) if defaults[key] else copy.deepcopy(value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    path = prompt_data_dir() / filename
    cache_key = str(path.resolve())

    mtime_ns: int | None = None
    if path.exists():
        try:
            mtime_ns = path.stat().st_mtime_ns
        except OSError:
            mtime_ns = None

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    merged = copy.deepcopy(defaults)
    if path.exists():
        try:
            payload = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read prompt file %s (%s). Using defaults.", path, exc)
        else:
            if isinstance(payload, dict):
                merged = _merge_known_keys(defaults, payload, path)
            else:
                logger.warning("Prompt file root must be an object: %s (using defaults)", path)
    else:
        logger.debug("Prompt file not found: %s (using defaults)", path)

    _CACHE[cache_key] = (mtime_ns, copy.deepcopy(merged))
    return merged
