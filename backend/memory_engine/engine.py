"""
NPC memory engine.

``MemoryEngine`` is the single entry point for dialogue callers:

- ``get_context`` / ``get_context_summary`` build the read model behind the
  context cache
- ``remember`` / ``forget`` / ``upsert_relationship`` / ``set_profile`` are the
  mutation paths; each runs in the agent's write lane and invalidates that
  agent's cached context before it returns
- ``apply_decay_cycle`` and ``rebuild_index`` are maintenance entry points,
  invoked by whatever schedules them

Read paths never raise for an unavailable store. They log the agent and the
operation and answer with an empty or neutral result. Write paths surface
``StoreUnavailableError``: the write was not confirmed, though one that timed
out may still commit later. The agent's cached context is dropped whether or not
the write succeeded, and again if a timed-out write commits late.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from runtime_state import WriteLaneCoordinator

from .backend import MemoryBackend
from .context_cache import ContextCache
from .decay import DecayEngine
from .embedding import EmbeddingProvider
from .errors import MemoryEngineError
from .models import (
    DEFAULT_COUNTERPARTY_TYPE,
    AgentProfile,
    ContextFilter,
    ContextType,
    EmotionalState,
    ForgetCriteria,
    MemoryContext,
    MemoryRecord,
    PersonalityTraits,
    RelationshipChanges,
    RelationshipRecord,
    SearchOptions,
    as_utc,
    new_memory_id,
    utc_now,
)
from .relationships import RELATIONSHIP_LIMIT, RelationshipTracker
from .retrieval import RetrievalEngine, keyword_score, query_terms

logger = logging.getLogger(__name__)

RECENT_MEMORY_LIMIT = 20
SUMMARY_KEY_IMPORTANCE = 7
SUMMARY_RECENT_LIMIT = 5
NO_MEMORIES_SUMMARY = "No relevant memories found for this context."
SUMMARY_UNAVAILABLE = "Unable to generate memory summary."
COMMON_TAGS = ("player", "faction", "mission", "ai", "game", "interaction")
RELATED_CANDIDATE_LIMIT = 20
RELATED_MEMORY_LIMIT = 5


def enrich_tags(content: str, tags: Optional[Iterable[str]], max_tags: int = 10) -> List[str]:
    """Caller tags first, then any common tag that appears as a word in the content."""
    enriched: List[str] = []
    for tag in tags or []:
        value = str(tag).strip()
        if value and value not in enriched:
            enriched.append(value)
    words = (content or "").lower().split()
    for tag in COMMON_TAGS:
        if tag in words and tag not in enriched:
            enriched.append(tag)
    return enriched[: max(0, int(max_tags))]


def _json_safe(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Metadata as the store and the cache will hand it back: JSON values only."""
    return json.loads(json.dumps(dict(metadata or {}), ensure_ascii=False, default=str))


def _scalar_record(cls, current, update, label: str):
    if update is None:
        return current
    if isinstance(update, cls):
        return update
    unknown = sorted(set(update) - set(cls.field_names()))
    if unknown:
        raise ValueError(f"Unknown {label} field(s): {', '.join(unknown)}")
    values = {name: getattr(current, name) for name in cls.field_names()}
    values.update({name: float(value) for name, value in update.items()})
    return cls(**values)


class MemoryEngine:
    def __init__(
        self,
        backend: MemoryBackend,
        *,
        cache: Optional[ContextCache] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        write_lanes: Optional[WriteLaneCoordinator] = None,
        retrieval: Optional[RetrievalEngine] = None,
        decay: Optional[DecayEngine] = None,
        content_max_chars: int = 4000,
        max_tags: int = 10,
    ):
        self.backend = backend
        self.cache = cache if cache is not None else ContextCache()
        self.embedding_provider = embedding_provider
        self.write_lanes = write_lanes if write_lanes is not None else WriteLaneCoordinator()
        self.retrieval = retrieval or RetrievalEngine(backend, embedding_provider)
        self.decay = decay or DecayEngine(backend)
        self.relationships = RelationshipTracker(backend)
        self.content_max_chars = max(1, int(content_max_chars))
        self.max_tags = max(1, int(max_tags))
        self.backend.on_late_write = self.cache.invalidate

    async def init(self) -> None:
        await self.backend.init()

    async def close(self) -> None:
        await self.backend.close()
        await self.cache.backend.close()
        if self.embedding_provider is not None:
            await self.embedding_provider.close()

    # =========================================================================
    # Read model
    # =========================================================================

    async def get_context(self, agent_id: str) -> MemoryContext:
        if not agent_id:
            return MemoryContext.neutral()
        return await self.cache.get_or_load(agent_id, lambda: self._load_context(agent_id))

    async def _load_context(self, agent_id: str) -> Tuple[MemoryContext, bool]:
        try:
            recent = await self.retrieval.search(
                SearchOptions(
                    limit=RECENT_MEMORY_LIMIT,
                    context_filter=ContextFilter(agent_id=agent_id),
                    strength_above=self.decay.delete_threshold,
                )
            )
            relationships = await self.relationships.recent(agent_id, RELATIONSHIP_LIMIT)
            profile = await self.backend.get_profile(agent_id)
        except MemoryEngineError as exc:
            logger.warning("get_context fell back to neutral for agent %s: %s", agent_id, exc)
            return MemoryContext.neutral(), False

        profile = profile or AgentProfile(agent_id)
        context = MemoryContext(
            recent_memories=recent,
            relationships=relationships,
            emotional_state=profile.emotional_state,
            personality_traits=profile.personality_traits,
        )
        return context, True

    async def get_context_summary(
        self,
        context_filter: Optional[ContextFilter] = None,
        max_length: int = 500,
    ) -> str:
        try:
            memories = await self.retrieval.search(
                SearchOptions(limit=RECENT_MEMORY_LIMIT, context_filter=context_filter)
            )
        except MemoryEngineError as exc:
            logger.warning("Context summary failed for %s: %s", context_filter, exc)
            return SUMMARY_UNAVAILABLE

        if not memories:
            return NO_MEMORIES_SUMMARY

        day_ago = utc_now() - timedelta(hours=24)
        key_memories = [m for m in memories if m.importance >= SUMMARY_KEY_IMPORTANCE]
        recent = [m for m in memories if m.created_at > day_ago][:SUMMARY_RECENT_LIMIT]

        summary = ""
        if key_memories:
            summary += "Key memories: " + "; ".join(m.content[:100] for m in key_memories) + ". "
        if recent:
            summary += "Recent activity: " + "; ".join(m.content[:80] for m in recent) + "."

        if len(summary) > max_length:
            summary = summary[: max(0, max_length - 3)] + "..."
        return summary

    async def search(self, options: Optional[SearchOptions] = None) -> List[MemoryRecord]:
        options = options or SearchOptions()
        try:
            return await self.retrieval.search(options)
        except MemoryEngineError as exc:
            logger.warning("search failed for filter %s: %s", options.context_filter, exc)
            return []

    async def recall(
        self,
        agent_id: str,
        query: str = "",
        *,
        limit: int = 10,
        context_type: Optional[ContextType] = None,
        min_importance: Optional[int] = None,
    ) -> List[MemoryRecord]:
        return await self.search(
            SearchOptions(
                query=query,
                limit=limit,
                context_filter=ContextFilter(agent_id=agent_id, context_type=context_type),
                min_importance=min_importance,
            )
        )

    async def get_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
    ) -> RelationshipRecord:
        try:
            return await self.relationships.get(agent_id, counterparty_id, counterparty_type)
        except MemoryEngineError as exc:
            logger.warning("get_relationship failed for agent %s: %s", agent_id, exc)
            return RelationshipRecord.neutral(agent_id, counterparty_id, counterparty_type)

    async def memories_by_tag(self, tag: str) -> List[MemoryRecord]:
        try:
            records = await self.backend.get_many(sorted(self.backend.index.lookup_tag(tag)))
        except MemoryEngineError as exc:
            logger.warning("memories_by_tag failed for %r: %s", tag, exc)
            return []
        return sorted(records, key=lambda item: (item.created_at, item.id), reverse=True)

    async def memories_by_counterparty(self, counterparty_id: str) -> List[MemoryRecord]:
        ids = self.backend.index.lookup_counterparty(counterparty_id)
        try:
            return await self.backend.get_many(ids)
        except MemoryEngineError as exc:
            logger.warning(
                "memories_by_counterparty failed for %s: %s", counterparty_id, exc
            )
            return []

    # =========================================================================
    # Mutations
    # =========================================================================

    async def remember(
        self,
        agent_id: str,
        content: str,
        *,
        context_type: Union[ContextType, str] = ContextType.GENERAL,
        importance: int = 5,
        counterparty_id: Optional[str] = None,
        session_id: Optional[str] = None,
        emotional_context: str = "",
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRecord:
        if not agent_id or not str(agent_id).strip():
            raise ValueError("agent_id is required")
        text = str(content or "")[: self.content_max_chars]
        kind = ContextType.coerce(context_type)
        record = MemoryRecord(
            id=new_memory_id(),
            agent_id=agent_id,
            content=text,
            context_type=kind,
            counterparty_id=counterparty_id,
            session_id=session_id,
            emotional_context=emotional_context or "",
            importance=importance,
            tags=enrich_tags(text, tags, self.max_tags),
            embedding=await self._embed(text),
            metadata=_json_safe(metadata),
            related_memory_ids=await self._find_related(text, kind),
        )

        async def _work() -> MemoryRecord:
            try:
                await self.backend.create(record)
            finally:
                await self.cache.invalidate(agent_id)
            return record

        stored = await self.write_lanes.run_write(
            agent_id=agent_id, operation="remember", task=_work
        )
        logger.debug("Stored memory %s for agent %s: %s", stored.id, agent_id, text[:80])
        return stored

    async def _find_related(self, content: str, context_type: ContextType) -> List[str]:
        """Ids of recent same-type memories, from any agent, sharing words with ``content``."""
        terms = query_terms(content)
        if not terms:
            return []
        try:
            candidates = await self.backend.find(ContextFilter(context_type=context_type))
        except MemoryEngineError as exc:
            logger.warning("Related memory lookup failed: %s", exc)
            return []
        latest = sorted(candidates, key=lambda item: (item.created_at, item.id), reverse=True)
        scored: List[Tuple[int, MemoryRecord]] = []
        for record in latest[:RELATED_CANDIDATE_LIMIT]:
            score = keyword_score(record, terms)
            if score > 0:
                scored.append((score, record))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [record.id for _, record in scored[:RELATED_MEMORY_LIMIT]]

    async def _embed(self, text: str) -> Optional[List[float]]:
        if self.embedding_provider is None or not text:
            return None
        return await self.embedding_provider.embed(text)

    async def forget(self, criteria: Union[str, List[str], ForgetCriteria]) -> int:
        """
        Forget by id, by a list of ids, or by ``ForgetCriteria``.

        ``older_than`` is exclusive. Returns how many records were removed.
        """
        if isinstance(criteria, str):
            criteria = ForgetCriteria(memory_ids=[criteria])
        elif isinstance(criteria, list):
            criteria = ForgetCriteria(memory_ids=list(criteria))

        targets: Dict[str, MemoryRecord] = {}
        if criteria.memory_ids:
            for record in await self.backend.get_many(list(dict.fromkeys(criteria.memory_ids))):
                targets[record.id] = record
        if criteria.context_filter is not None or criteria.older_than is not None:
            older_than = as_utc(criteria.older_than)
            for record in await self.backend.find(criteria.context_filter, time_end=older_than):
                if older_than is None or record.created_at < older_than:
                    targets[record.id] = record

        by_agent: Dict[str, List[str]] = {}
        for record in targets.values():
            by_agent.setdefault(record.agent_id, []).append(record.id)

        forgotten = 0
        for agent_id, memory_ids in by_agent.items():

            async def _work(agent_id: str = agent_id, memory_ids: List[str] = memory_ids) -> int:
                removed = 0
                try:
                    for memory_id in memory_ids:
                        if await self.backend.delete(memory_id, agent_id=agent_id):
                            removed += 1
                finally:
                    await self.cache.invalidate(agent_id)
                return removed

            forgotten += await self.write_lanes.run_write(
                agent_id=agent_id, operation="forget", task=_work
            )
        logger.info("Forgot %d memories across %d agents", forgotten, len(by_agent))
        return forgotten

    async def upsert_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        changes: Union[RelationshipChanges, Dict[str, float], None] = None,
        *,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
    ) -> RelationshipRecord:
        async def _work() -> RelationshipRecord:
            try:
                return await self.relationships.upsert(
                    agent_id, counterparty_id, changes, counterparty_type=counterparty_type
                )
            finally:
                await self.cache.invalidate(agent_id)

        return await self.write_lanes.run_write(
            agent_id=agent_id, operation="upsert_relationship", task=_work
        )

    async def set_profile(
        self,
        agent_id: str,
        emotional_state: Union[EmotionalState, Dict[str, float], None] = None,
        personality_traits: Union[PersonalityTraits, Dict[str, float], None] = None,
    ) -> AgentProfile:
        """Replace or partially update an agent's emotional state and traits."""
        if not agent_id:
            raise ValueError("agent_id is required")

        async def _work() -> AgentProfile:
            current = await self.backend.get_profile(agent_id) or AgentProfile(agent_id)
            profile = AgentProfile(
                agent_id=agent_id,
                emotional_state=_scalar_record(
                    EmotionalState, current.emotional_state, emotional_state, "emotional state"
                ),
                personality_traits=_scalar_record(
                    PersonalityTraits,
                    current.personality_traits,
                    personality_traits,
                    "personality trait",
                ),
            )
            try:
                await self.backend.set_profile(profile)
            finally:
                await self.cache.invalidate(agent_id)
            return profile

        return await self.write_lanes.run_write(
            agent_id=agent_id, operation="set_profile", task=_work
        )

    async def import_memories(self, records: Iterable[Union[MemoryRecord, Dict[str, Any]]]) -> int:
        """Restore exported records; an existing id is replaced."""
        imported = 0
        total = 0
        for item in records:
            total += 1
            try:
                record = item if isinstance(item, MemoryRecord) else MemoryRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable memory in import: %s", exc)
                continue

            async def _work(record: MemoryRecord = record) -> None:
                try:
                    if await self.backend.get(record.id) is not None:
                        await self.backend.delete(record.id, agent_id=record.agent_id)
                    await self.backend.create(record)
                finally:
                    await self.cache.invalidate(record.agent_id)

            try:
                await self.write_lanes.run_write(
                    agent_id=record.agent_id, operation="import", task=_work
                )
            except (MemoryEngineError, ValueError) as exc:
                logger.warning("Failed to import memory %s: %s", record.id, exc)
                continue
            imported += 1
        logger.info("Imported %d of %d memories", imported, total)
        return imported

    async def export_memories(
        self, context_filter: Optional[ContextFilter] = None
    ) -> List[Dict[str, Any]]:
        records = await self.backend.find(context_filter)
        return [record.to_dict() for record in records]

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def apply_decay_cycle(
        self, reference_time: Optional[datetime] = None
    ) -> Dict[str, Any]:
        try:
            result = await self.decay.run_cycle(reference_time)
        except MemoryEngineError as exc:
            logger.warning("Decay cycle aborted: %s", exc)
            return {"applied": False, "degraded": True, "reason": str(exc)}
        for agent_id in result.get("affected_agents", []):
            await self.cache.invalidate(agent_id)
        return result

    async def rebuild_index(self) -> Dict[str, Any]:
        indexed = await self.backend.rebuild_index()
        return {"indexed": indexed, **self.backend.index.stats()}

    async def analytics(self) -> Dict[str, Any]:
        records = await self.backend.list_all()
        tag_counts: Counter = Counter()
        for record in records:
            tag_counts.update(record.tags)
        total = len(records)
        return {
            "total_memories": total,
            "context_distribution": dict(
                Counter(record.context_type.value for record in records)
            ),
            "average_importance": (
                sum(record.importance for record in records) / total if total else 0.0
            ),
            "top_tags": [
                {"tag": tag, "count": count} for tag, count in tag_counts.most_common(10)
            ],
            "retrieval_patterns": self.retrieval.patterns(),
            "index": self.backend.index.stats(),
            "cache": self.cache.stats(),
        }
