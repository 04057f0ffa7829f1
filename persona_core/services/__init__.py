from .base import EmbeddingProvider, JsonChatBackend, LanguageModel
from .factory import build_embedding_provider, build_language_model
from .gemini_client import GeminiClient
from .ollama_chat_client import OllamaChatClient

__all__ = [
    "EmbeddingProvider",
    "GeminiClient",
    "JsonChatBackend",
    "LanguageModel",
    "OllamaChatClient",
    "build_embedding_provider",
    "build_language_model",
]
