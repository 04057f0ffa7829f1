from .extractor import MemoryExtractor
from .manager import MemoryManager, MemoryPolicy
from .store import MemoryStore

__all__ = ["MemoryExtractor", "MemoryManager", "MemoryPolicy", "MemoryStore"]
