from .memory_store import InMemoryStore
from .sqlite_store import SQLiteMemoryStore

__all__ = ["InMemoryStore", "SQLiteMemoryStore"]
