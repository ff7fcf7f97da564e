"""NPC memory and recall engine."""

from .context_cache import ContextCache, InProcessCache, RedisCache
from .engine import MemoryEngine
from .errors import MemoryEngineError, StoreUnavailableError
from .models import (
    ContextFilter,
    ContextType,
    ForgetCriteria,
    MemoryContext,
    MemoryRecord,
    RelationshipChanges,
    RelationshipRecord,
    SearchOptions,
)

__all__ = [
    "ContextCache",
    "ContextFilter",
    "ContextType",
    "ForgetCriteria",
    "InProcessCache",
    "MemoryContext",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryRecord",
    "RedisCache",
    "RelationshipChanges",
    "RelationshipRecord",
    "SearchOptions",
    "StoreUnavailableError",
]
