"""
Memory API - context, recall and mutation endpoints for dialogue callers.

Read endpoints always answer (an unavailable store yields an empty or neutral
payload). Write endpoints return 503 when the store could not record the change.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from memory_engine import (
    ContextFilter,
    ContextType,
    ForgetCriteria,
    MemoryEngine,
    MemoryEngineError,
    RelationshipChanges,
    SearchOptions,
)
from .maintenance import get_engine, require_maintenance_api_key

router = APIRouter(prefix="/memory", tags=["memory"])


class ContextFilterModel(BaseModel):
    agent_id: Optional[str] = None
    context_type: Optional[ContextType] = None
    session_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_filter(self) -> ContextFilter:
        return ContextFilter(
            agent_id=self.agent_id,
            context_type=self.context_type,
            session_id=self.session_id,
            counterparty_id=self.counterparty_id,
            metadata=self.metadata,
        )


class RememberRequest(BaseModel):
    content: str = Field(min_length=1)
    context_type: ContextType = ContextType.GENERAL
    importance: float = 5
    counterparty_id: Optional[str] = None
    session_id: Optional[str] = None
    emotional_context: str = ""
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ForgetRequest(BaseModel):
    memory_ids: List[str] = Field(default_factory=list)
    filter: Optional[ContextFilterModel] = None
    older_than: Optional[datetime] = None


class SearchRequest(BaseModel):
    query: str = ""
    limit: int = Field(default=10, ge=1, le=100)
    filter: Optional[ContextFilterModel] = None
    min_importance: Optional[int] = None
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None
    semantic_threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class RelationshipUpdate(BaseModel):
    counterparty_type: str = "PLAYER"
    trust: Optional[float] = None
    respect: Optional[float] = None
    fear: Optional[float] = None
    loyalty: Optional[float] = None


class ProfileUpdate(BaseModel):
    emotional_state: Optional[Dict[str, float]] = None
    personality_traits: Optional[Dict[str, float]] = None


class SummaryRequest(BaseModel):
    filter: Optional[ContextFilterModel] = None
    max_length: int = Field(default=500, ge=10, le=10000)


class ImportRequest(BaseModel):
    memories: List[Dict[str, Any]] = Field(default_factory=list)


def _store_unavailable(exc: MemoryEngineError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "store_unavailable", "reason": str(exc)},
    )


def _records(records) -> List[Dict[str, Any]]:
    return [record.to_dict(include_embedding=False) for record in records]


@router.get("/analytics")
async def get_analytics(engine: MemoryEngine = Depends(get_engine)):
    try:
        return await engine.analytics()
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)


@router.post("/search")
async def search_memories(payload: SearchRequest, engine: MemoryEngine = Depends(get_engine)):
    results = await engine.search(
        SearchOptions(
            query=payload.query,
            limit=payload.limit,
            context_filter=payload.filter.to_filter() if payload.filter else None,
            min_importance=payload.min_importance,
            time_start=payload.time_start,
            time_end=payload.time_end,
            semantic_threshold=payload.semantic_threshold,
        )
    )
    return {"count": len(results), "results": _records(results)}


@router.post("/summary")
async def get_summary(payload: SummaryRequest, engine: MemoryEngine = Depends(get_engine)):
    summary = await engine.get_context_summary(
        payload.filter.to_filter() if payload.filter else None,
        max_length=payload.max_length,
    )
    return {"summary": summary}


@router.post("/forget")
async def forget_memories(payload: ForgetRequest, engine: MemoryEngine = Depends(get_engine)):
    if not payload.memory_ids and payload.filter is None and payload.older_than is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="memory_ids, filter or older_than is required",
        )
    criteria = ForgetCriteria(
        memory_ids=payload.memory_ids,
        context_filter=payload.filter.to_filter() if payload.filter else None,
        older_than=payload.older_than,
    )
    try:
        forgotten = await engine.forget(criteria)
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)
    return {"forgotten": forgotten}


@router.get("/tags/{tag}")
async def get_memories_by_tag(tag: str, engine: MemoryEngine = Depends(get_engine)):
    return {"tag": tag, "results": _records(await engine.memories_by_tag(tag))}


@router.get("/counterparty/{counterparty_id}")
async def get_memories_by_counterparty(
    counterparty_id: str, engine: MemoryEngine = Depends(get_engine)
):
    records = await engine.memories_by_counterparty(counterparty_id)
    return {"counterparty_id": counterparty_id, "results": _records(records)}


@router.get("/export", dependencies=[Depends(require_maintenance_api_key)])
async def export_memories(
    agent_id: Optional[str] = None,
    context_type: Optional[ContextType] = None,
    engine: MemoryEngine = Depends(get_engine),
):
    try:
        memories = await engine.export_memories(
            ContextFilter(agent_id=agent_id, context_type=context_type)
        )
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)
    return {"count": len(memories), "memories": memories}


@router.post("/import", dependencies=[Depends(require_maintenance_api_key)])
async def import_memories(payload: ImportRequest, engine: MemoryEngine = Depends(get_engine)):
    imported = await engine.import_memories(payload.memories)
    return {"imported": imported, "total": len(payload.memories)}


@router.get("/{agent_id}/context")
async def get_context(agent_id: str, engine: MemoryEngine = Depends(get_engine)):
    context = await engine.get_context(agent_id)
    return context.to_dict()


@router.post("/{agent_id}/remember", status_code=status.HTTP_201_CREATED)
async def remember(
    agent_id: str, payload: RememberRequest, engine: MemoryEngine = Depends(get_engine)
):
    try:
        record = await engine.remember(
            agent_id,
            payload.content,
            context_type=payload.context_type,
            importance=payload.importance,
            counterparty_id=payload.counterparty_id,
            session_id=payload.session_id,
            emotional_context=payload.emotional_context,
            tags=payload.tags,
            metadata=payload.metadata,
        )
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)
    return record.to_dict(include_embedding=False)


@router.get("/{agent_id}/recall")
async def recall(
    agent_id: str,
    query: str = "",
    limit: int = 10,
    engine: MemoryEngine = Depends(get_engine),
):
    results = await engine.recall(agent_id, query, limit=max(1, min(100, limit)))
    return {"count": len(results), "results": _records(results)}


@router.get("/{agent_id}/relationships/{counterparty_id}")
async def get_relationship(
    agent_id: str,
    counterparty_id: str,
    counterparty_type: str = "PLAYER",
    engine: MemoryEngine = Depends(get_engine),
):
    record = await engine.get_relationship(agent_id, counterparty_id, counterparty_type)
    return record.to_dict()


@router.put("/{agent_id}/relationships/{counterparty_id}")
async def upsert_relationship(
    agent_id: str,
    counterparty_id: str,
    payload: RelationshipUpdate,
    engine: MemoryEngine = Depends(get_engine),
):
    changes = RelationshipChanges(
        trust=payload.trust,
        respect=payload.respect,
        fear=payload.fear,
        loyalty=payload.loyalty,
    )
    try:
        record = await engine.upsert_relationship(
            agent_id,
            counterparty_id,
            changes,
            counterparty_type=payload.counterparty_type,
        )
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)
    return record.to_dict()


@router.put("/{agent_id}/profile")
async def set_profile(
    agent_id: str, payload: ProfileUpdate, engine: MemoryEngine = Depends(get_engine)
):
    try:
        profile = await engine.set_profile(
            agent_id,
            emotional_state=payload.emotional_state,
            personality_traits=payload.personality_traits,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except MemoryEngineError as exc:
        raise _store_unavailable(exc)
    return {
        "agent_id": profile.agent_id,
        "emotional_state": profile.emotional_state.to_dict(),
        "personality_traits": profile.personality_traits.to_dict(),
    }
