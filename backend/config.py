"""
Environment-driven settings for the NPC memory engine.

Values are read once via ``EngineSettings.from_env()`` and passed explicitly to
the components that need them; nothing here builds engine objects.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if minimum is None else max(minimum, value)


def _embedding_dim(value: int) -> int:
    return max(16, value) if value > 0 else 0


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if minimum is None else max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass
class EngineSettings:
    database_url: str = "sqlite+aiosqlite:///npc_memory.db"
    backend: str = "sqlite"
    redis_url: str = ""
    log_level: str = "INFO"

    cache_ttl_seconds: int = 3600
    cache_timeout_sec: float = 1.0
    store_timeout_sec: float = 5.0

    decay_rate: float = 0.01
    decay_delete_threshold: float = 0.1
    decay_min_age_hours: float = 24.0
    decay_interval_hours: float = 24.0
    retention_days: float = 30.0

    content_max_chars: int = 4000
    max_tags: int = 10

    embedding_backend: str = "none"
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_model: str = "hash-v1"
    # 0 leaves remote vectors unchecked; the local hash provider then uses 64.
    embedding_dim: int = 0
    remote_timeout_sec: float = 8.0

    semantic_threshold: float = 0.7
    importance_weight: float = 0.3
    recency_weight: float = 1e-10

    @classmethod
    def from_env(cls) -> "EngineSettings":
        backend = os.getenv("MEMORY_BACKEND", "sqlite").strip().lower() or "sqlite"
        if backend not in {"sqlite", "memory"}:
            backend = "sqlite"
        embedding_backend = (
            os.getenv("RETRIEVAL_EMBEDDING_BACKEND", "none").strip().lower() or "none"
        )
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            backend=backend,
            redis_url=os.getenv("REDIS_URL", "").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            cache_ttl_seconds=_env_int("AI_MEMORY_CACHE_TTL_SECONDS", 3600, minimum=1),
            cache_timeout_sec=_env_float("MEMORY_CACHE_TIMEOUT_SEC", 1.0, minimum=0.05),
            store_timeout_sec=_env_float("MEMORY_STORE_TIMEOUT_SEC", 5.0, minimum=0.1),
            decay_rate=_env_float("MEMORY_DECAY_RATE", 0.01, minimum=0.0),
            decay_delete_threshold=_env_float(
                "MEMORY_DECAY_DELETE_THRESHOLD", 0.1, minimum=0.0
            ),
            decay_min_age_hours=_env_float("MEMORY_DECAY_MIN_AGE_HOURS", 24.0, minimum=0.0),
            decay_interval_hours=_env_float(
                "MEMORY_DECAY_INTERVAL_HOURS", 24.0, minimum=0.01
            ),
            retention_days=_env_float("AI_MEMORY_RETENTION_DAYS", 30.0, minimum=0.0),
            content_max_chars=_env_int("MEMORY_CONTENT_MAX_CHARS", 4000, minimum=1),
            max_tags=_env_int("MEMORY_MAX_TAGS", 10, minimum=1),
            embedding_backend=embedding_backend,
            embedding_api_base=_first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_BASE",
                    "RETRIEVAL_EMBEDDING_BASE",
                    "ROUTER_API_BASE",
                    "OPENAI_BASE_URL",
                    "OPENAI_API_BASE",
                ]
            ),
            embedding_api_key=_first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_KEY",
                    "RETRIEVAL_EMBEDDING_KEY",
                    "ROUTER_API_KEY",
                    "OPENAI_API_KEY",
                ]
            ),
            embedding_model=_first_env(
                ["RETRIEVAL_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"],
                default="hash-v1",
            ),
            embedding_dim=_embedding_dim(_env_int("RETRIEVAL_EMBEDDING_DIM", 0)),
            remote_timeout_sec=_env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0, minimum=1.0),
            semantic_threshold=min(
                1.0, _env_float("RETRIEVAL_SEMANTIC_THRESHOLD", 0.7, minimum=-1.0)
            ),
            importance_weight=_env_float("RETRIEVAL_IMPORTANCE_WEIGHT", 0.3, minimum=0.0),
            recency_weight=_env_float("RETRIEVAL_RECENCY_WEIGHT", 1e-10, minimum=0.0),
        )


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the process."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
