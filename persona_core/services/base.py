from __future__ import annotations

import asyncio
import json
import re
from typing import Any, AsyncIterator, Protocol

import aiohttp

from ..errors import ProviderError, ProviderErrorKind

RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class LanguageModel(Protocol):
    async def complete(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> str: ...

    def stream(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]: ...


class JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, Any] | None: ...


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def error_kind_for_status(status: int) -> ProviderErrorKind:
    if status == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status in {408, 504}:
        return ProviderErrorKind.TIMEOUT
    if 400 <= status < 500 and status != 409:
        return ProviderErrorKind.INVALID_REQUEST
    return ProviderErrorKind.UNAVAILABLE


def provider_error_for_status(provider: str, status: int, body: str) -> ProviderError:
    snippet = " ".join((body or "").split())[:300]
    return ProviderError(
        error_kind_for_status(status),
        f"{provider} error {status}: {snippet}",
        status=status,
    )


def provider_error_for_exception(provider: str, exc: BaseException) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ProviderError(ProviderErrorKind.TIMEOUT, f"{provider} request timed out")
    if isinstance(exc, json.JSONDecodeError):
        return ProviderError(ProviderErrorKind.UNAVAILABLE, f"{provider} returned invalid JSON: {exc}")
    return ProviderError(ProviderErrorKind.UNAVAILABLE, f"{provider} request failed: {exc}")


def strip_json_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start >= 0 and end > start:
            cleaned = cleaned[start : end + 1].strip()
    return cleaned


def parse_json_object(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(strip_json_fences(raw))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
