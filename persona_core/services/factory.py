from __future__ import annotations

from ..config import Settings
from .gemini_client import GeminiClient
from .ollama_chat_client import OllamaChatClient


def build_language_model(settings: Settings) -> GeminiClient | OllamaChatClient:
    """Build the configured provider; the same client also serves embeddings and JSON extraction."""
    if settings.llm_backend == "ollama":
        return OllamaChatClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout_seconds=settings.llm_timeout_seconds,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            embedding_model=settings.ollama_embedding_model,
        )
    if settings.llm_backend == "gemini":
        return GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.llm_timeout_seconds,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            base_url=settings.gemini_base_url,
            embedding_model=settings.gemini_embedding_model,
        )
    raise ValueError("LLM_BACKEND must be 'gemini' or 'ollama'")


def build_embedding_provider(settings: Settings, llm: GeminiClient | OllamaChatClient | None = None) -> GeminiClient | OllamaChatClient:
    """Embeddings come from the configured backend; an already built chat client is reused."""
    if llm is not None:
        return llm
    return build_language_model(settings)
