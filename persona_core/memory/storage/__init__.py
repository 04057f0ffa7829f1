from .records import MemoryRecordsMixin
from .schema import MemorySchemaMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryRecordsMixin",
]
