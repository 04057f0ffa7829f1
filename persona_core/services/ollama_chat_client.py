from __future__ import annotations

import json
import re
from typing import Any, AsyncIterator

from ..errors import ProviderError, ProviderErrorKind
from .base import parse_json_object
from .http import HttpProviderClient


class OllamaChatClient(HttpProviderClient):
    """Ollama client exposing the same complete/stream/json_chat/embed surface as GeminiClient."""

    provider_name = "Ollama"
    backend_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: int = 45,
        temperature: float = 0.8,
        max_output_tokens: int = 0,
        embedding_model: str = "nomic-embed-text",
    ) -> None:
        super().__init__(timeout_seconds)
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama model cannot be empty")
        self.embedding_model = (embedding_model or "").strip() or self.model
        self.temperature = float(temperature)
        self.max_output_tokens = max(0, int(max_output_tokens or 0))

    def _endpoint(self, path: str = "chat") -> str:
        return f"{self.base_url}/api/{path}"

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
        mapped_messages: list[dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            mapped_messages.append({"role": role, "content": content})
        return mapped_messages

    @staticmethod
    def _strip_reasoning_blocks(text: str) -> str:
        # Some reasoning-capable models may emit hidden-thought tags.
        return re.sub(r"<think>.*?</think>\s*", "", str(text or ""), flags=re.IGNORECASE | re.DOTALL)

    @staticmethod
    def _looks_like_json_schema(parsed: dict[str, Any]) -> bool:
        # Ollama `format` expects a JSON Schema object, not an example JSON payload.
        schema_markers = {"type", "properties", "required", "items", "oneOf", "anyOf", "allOf", "$schema", "enum"}
        return any(key in parsed for key in schema_markers)

    @classmethod
    def _schema_format(cls, schema_hint: str) -> dict[str, Any] | str:
        try:
            parsed = json.loads(str(schema_hint or "").strip())
        except json.JSONDecodeError:
            return "json"
        if isinstance(parsed, dict) and cls._looks_like_json_schema(parsed):
            return parsed
        return "json"

    def _build_payload(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None,
        max_output_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            raise ProviderError(ProviderErrorKind.INVALID_REQUEST, "Ollama request has no message content")
        options: dict[str, Any] = {
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens and int(selected_tokens) > 0:
            options["num_predict"] = int(selected_tokens)
        return {
            "model": self.model,
            "messages": mapped_messages,
            "stream": stream,
            "think": False,
            "options": options,
        }

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Ollama returned empty message content")

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        *,
        retries: int = 3,
    ) -> str:
        payload = self._build_payload(
            messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            stream=False,
        )
        data = await self._request(self._endpoint("chat"), payload, retries=retries)
        return self._strip_reasoning_blocks(self._extract_message_text(data))

    async def complete(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}, *history]
        return await self.chat(messages, temperature=temperature, retries=1)

    async def stream(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        messages = [{"role": "system", "content": system_prompt}, *history]
        payload = self._build_payload(messages, temperature=temperature, max_output_tokens=None, stream=True)
        async for line in self._stream_lines(self._endpoint("chat"), payload):
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ProviderError(ProviderErrorKind.UNAVAILABLE, f"Ollama sent malformed stream line: {exc}") from exc
            if data.get("error"):
                raise ProviderError(ProviderErrorKind.UNAVAILABLE, f"Ollama stream error: {data['error']}")
            message = data.get("message") or {}
            chunk = message.get("content") if isinstance(message, dict) else None
            if isinstance(chunk, str) and chunk:
                yield chunk
            if data.get("done"):
                return

    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, Any] | None:
        payload = self._build_payload(
            messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            stream=False,
        )
        payload["format"] = self._schema_format(schema_hint)
        data = await self._request(self._endpoint("chat"), payload)
        return parse_json_object(self._extract_message_text(data))

    async def embed(self, text: str) -> list[float]:
        payload = {"model": self.embedding_model, "input": text}
        data = await self._request(self._endpoint("embed"), payload, retries=1)
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or not embeddings or not isinstance(embeddings[0], list):
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Ollama returned an empty embedding")
        return [float(value) for value in embeddings[0]]
