import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router, memory_router
from config import EngineSettings, setup_logging
from db import InMemoryStore, SQLiteMemoryStore
from memory_engine import ContextCache, InProcessCache, MemoryEngine, MemoryEngineError, RedisCache
from memory_engine.decay import DecayEngine
from memory_engine.embedding import build_embedding_provider
from memory_engine.retrieval import RetrievalEngine
from runtime_state import RuntimeState, WriteLaneCoordinator

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_engine(
    settings: EngineSettings, write_lanes: Optional[WriteLaneCoordinator] = None
) -> MemoryEngine:
    """Wire a MemoryEngine and its collaborators from settings."""
    if settings.backend == "memory":
        backend = InMemoryStore(timeout_sec=settings.store_timeout_sec)
    else:
        backend = SQLiteMemoryStore(
            settings.database_url, timeout_sec=settings.store_timeout_sec
        )

    if settings.redis_url:
        cache_backend = RedisCache(
            settings.redis_url, timeout_sec=settings.cache_timeout_sec
        )
    else:
        cache_backend = InProcessCache()

    embedding_provider = build_embedding_provider(
        settings.embedding_backend,
        api_base=settings.embedding_api_base,
        api_key=settings.embedding_api_key,
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        timeout_sec=settings.remote_timeout_sec,
    )

    return MemoryEngine(
        backend,
        cache=ContextCache(cache_backend, ttl_seconds=settings.cache_ttl_seconds),
        embedding_provider=embedding_provider,
        write_lanes=write_lanes,
        retrieval=RetrievalEngine(
            backend,
            embedding_provider,
            semantic_threshold=settings.semantic_threshold,
            importance_weight=settings.importance_weight,
            recency_weight=settings.recency_weight,
        ),
        decay=DecayEngine(
            backend,
            decay_rate=settings.decay_rate,
            delete_threshold=settings.decay_delete_threshold,
            min_age_hours=settings.decay_min_age_hours,
            retention_days=settings.retention_days,
        ),
        content_max_chars=settings.content_max_chars,
        max_tags=settings.max_tags,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: EngineSettings = getattr(app.state, "settings", None) or EngineSettings.from_env()
    setup_logging(settings.log_level)
    logger.info("NPC memory API starting (backend=%s)", settings.backend)

    runtime = RuntimeState()
    engine = build_engine(settings, runtime.write_lanes)
    try:
        await engine.init()
    except Exception as e:
        logger.error("Failed to initialize memory store: %s", e)
        raise RuntimeError("Failed to initialize memory store during startup") from e

    app.state.engine = engine
    app.state.runtime = runtime
    if getattr(app.state, "start_scheduler", True):
        await runtime.start_scheduler(
            engine.apply_decay_cycle, settings.decay_interval_hours * 3600.0
        )

    yield

    logger.info("Closing memory engine...")
    await runtime.shutdown()
    await engine.close()


def create_app(settings: Optional[EngineSettings] = None, start_scheduler: bool = True) -> FastAPI:
    app = FastAPI(
        title="NPC Memory API",
        description="Memory and recall engine for NPCs and companions",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.start_scheduler = start_scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(memory_router)
    app.include_router(maintenance_router)

    @app.get("/")
    async def root():
        return {"message": "NPC Memory API", "version": APP_VERSION, "docs": "/docs"}

    @app.get("/health")
    async def health():
        payload: Dict[str, Any] = {"status": "ok", "timestamp": _utc_iso_now()}
        engine: Optional[MemoryEngine] = getattr(app.state, "engine", None)
        runtime: Optional[RuntimeState] = getattr(app.state, "runtime", None)
        if engine is None or runtime is None:
            payload["status"] = "degraded"
            payload["reason"] = "engine_not_started"
            return payload

        payload["backend"] = engine.backend.name
        payload["index"] = engine.backend.index.stats()
        payload["cache"] = engine.cache.stats()
        payload["embedding"] = (
            engine.embedding_provider.name if engine.embedding_provider else None
        )
        try:
            await engine.backend.get("__health_check__")
            payload["store"] = {"available": True}
        except MemoryEngineError as e:
            payload["status"] = "degraded"
            payload["store"] = {"available": False, "reason": str(e)}
        payload["runtime"] = {
            "write_lanes": await runtime.write_lanes.status(),
            "decay": await runtime.decay.status(),
            "scheduler": (
                runtime.scheduler.status() if runtime.scheduler else {"started": False}
            ),
        }
        return payload

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
