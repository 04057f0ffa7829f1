from .errors import ClassificationError, ConfigError, PersonaCoreError, ProviderError, ProviderErrorKind, StorageError

__all__ = [
    "ClassificationError",
    "ConfigError",
    "PersonaCoreError",
    "ProviderError",
    "ProviderErrorKind",
    "StorageError",
]

__version__ = "0.1.0"
