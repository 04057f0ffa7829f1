from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

from ..errors import ProviderError, ProviderErrorKind
from .base import parse_json_object
from .http import HttpProviderClient


class GeminiClient(HttpProviderClient):
    provider_name = "Gemini"
    backend_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
        embedding_model: str = "text-embedding-004",
    ) -> None:
        super().__init__(timeout_seconds)
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None

    def _endpoint(self, method: str, *, model: str | None = None, sse: bool = False) -> str:
        target = model or self.model
        query = f"alt=sse&key={self.api_key}" if sse else f"key={self.api_key}"
        return f"{self.base_url}/v1beta/models/{target}:{method}?{query}"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    def _build_payload(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> Dict[str, Any]:
        payload = self._map_messages(messages)
        if not payload["contents"]:
            raise ProviderError(ProviderErrorKind.INVALID_REQUEST, "Gemini request has no user or model content")
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            generation_config["maxOutputTokens"] = int(selected_tokens)
        payload["generationConfig"] = generation_config
        return payload

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part.get("text"), str))

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise ProviderError(ProviderErrorKind.INVALID_REQUEST, f"Gemini blocked response: {block_reason}")
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Gemini returned no candidates")

        joined = cls._candidate_text(data)
        if joined.strip():
            return joined

        finish_reason = candidates[0].get("finishReason")
        if finish_reason:
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, f"Gemini empty response (finishReason={finish_reason})")
        raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Gemini empty response")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        *,
        retries: int = 3,
    ) -> str:
        payload = self._build_payload(messages, temperature, max_output_tokens)
        data = await self._request(self._endpoint("generateContent"), payload, retries=retries)
        return self._extract_text(data)

    async def complete(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}, *history]
        # Single attempt: retrying a completion could duplicate a generation.
        return await self.chat(messages, temperature=temperature, retries=1)

    async def stream(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        messages = [{"role": "system", "content": system_prompt}, *history]
        payload = self._build_payload(messages, temperature, None)
        url = self._endpoint("streamGenerateContent", sse=True)
        async for line in self._stream_lines(url, payload):
            if not line.startswith("data:"):
                continue
            body = line[len("data:") :].strip()
            if not body or body == "[DONE]":
                continue
            try:
                data = json.loads(body)
            except json.JSONDecodeError as exc:
                raise ProviderError(ProviderErrorKind.UNAVAILABLE, f"Gemini sent malformed stream event: {exc}") from exc
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(ProviderErrorKind.INVALID_REQUEST, f"Gemini blocked response: {block_reason}")
            chunk = self._candidate_text(data)
            if chunk:
                yield chunk

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        raw = await self.chat(
            strict_messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        return parse_json_object(raw)

    async def embed(self, text: str) -> list[float]:
        payload = {
            "model": f"models/{self.embedding_model}",
            "content": {"parts": [{"text": text}]},
        }
        data = await self._request(
            self._endpoint("embedContent", model=self.embedding_model),
            payload,
            retries=1,
        )
        values = (data.get("embedding") or {}).get("values")
        if not isinstance(values, list) or not values:
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Gemini returned an empty embedding")
        return [float(value) for value in values]
