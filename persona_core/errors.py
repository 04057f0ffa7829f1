from __future__ import annotations

from enum import Enum


class PersonaCoreError(Exception):
    """Base class for errors raised by the persona core."""


class ConfigError(PersonaCoreError):
    """Invalid or incomplete persona/world definition. Never retried."""


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    UNAVAILABLE = "unavailable"


class ProviderError(PersonaCoreError):
    """Language-model or embedding provider failure."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str = "",
        *,
        status: int | None = None,
    ) -> None:
        self.kind = ProviderErrorKind(kind)
        self.status = status
        detail = message or self.kind.value
        super().__init__(f"{self.kind.value}: {detail}")

    @property
    def retriable(self) -> bool:
        return self.kind is not ProviderErrorKind.INVALID_REQUEST


class StorageError(PersonaCoreError):
    """Memory store failure. A write that raised this was not persisted."""


class ClassificationError(PersonaCoreError):
    """Embedding was unavailable while adding a memory and degraded mode is off."""
