"""
Hybrid retrieval over one backend.

Pipeline:
1. filter candidates through the backend (context filter, min importance,
   inclusive time range)
2. semantic scoring when a query, a provider and embeddings on every candidate
   are all present; nothing above the threshold falls back to keywords
3. keyword scoring otherwise (2 per content hit, 1 per tag hit)
4. stable re-rank by importance, recency as a faint tie-break
5. truncate to ``limit``

An empty query skips steps 2 and 3.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, List, Optional, Tuple

from .backend import MemoryBackend
from .embedding import EmbeddingProvider, cosine_similarity
from .models import MemoryRecord, SearchOptions

logger = logging.getLogger(__name__)

_QUERY_CATEGORIES = (
    ("player", "player_query"),
    ("faction", "faction_query"),
    ("mission", "mission_query"),
    ("game", "game_query"),
)


def categorize_query(query: str) -> str:
    lowered = (query or "").lower()
    for needle, category in _QUERY_CATEGORIES:
        if needle in lowered:
            return category
    return "general_query"


def query_terms(query: str) -> List[str]:
    return [term for term in re.split(r"\s+", (query or "").lower()) if len(term) > 2]


def keyword_score(record: MemoryRecord, terms: List[str]) -> int:
    content = record.content.lower()
    tags = [tag.lower() for tag in record.tags]
    score = 0
    for term in terms:
        if term in content:
            score += 2
        if any(term in tag for tag in tags):
            score += 1
    return score


class RetrievalEngine:
    def __init__(
        self,
        backend: MemoryBackend,
        embedding_provider: Optional[EmbeddingProvider] = None,
        *,
        semantic_threshold: float = 0.7,
        importance_weight: float = 0.3,
        recency_weight: float = 1e-10,
    ):
        self.backend = backend
        self.embedding_provider = embedding_provider
        self.semantic_threshold = semantic_threshold
        self.importance_weight = importance_weight
        self.recency_weight = recency_weight
        self.retrieval_patterns: Counter = Counter()

    def rank_score(self, record: MemoryRecord) -> float:
        return (
            self.importance_weight * record.importance
            + self.recency_weight * record.created_at.timestamp()
        )

    def rerank(self, records: List[MemoryRecord]) -> List[MemoryRecord]:
        # sorted() is stable, so equal scores keep their relevance order.
        return sorted(records, key=self.rank_score, reverse=True)

    async def search(self, options: SearchOptions) -> List[MemoryRecord]:
        limit = max(0, int(options.limit))
        candidates = await self.backend.find(
            options.context_filter,
            min_importance=options.min_importance,
            time_start=options.time_start,
            time_end=options.time_end,
        )
        if options.strength_above is not None:
            candidates = [r for r in candidates if r.strength > options.strength_above]
        query = (options.query or "").strip()
        if query:
            self.retrieval_patterns[categorize_query(query)] += 1
            candidates = await self._score(query, candidates, options.semantic_threshold)
        return self.rerank(candidates)[:limit]

    async def _score(
        self,
        query: str,
        candidates: List[MemoryRecord],
        threshold: Optional[float],
    ) -> List[MemoryRecord]:
        semantic = await self._semantic(query, candidates, threshold)
        if semantic:
            return semantic
        terms = query_terms(query)
        scored: List[Tuple[int, MemoryRecord]] = []
        for record in candidates:
            score = keyword_score(record, terms)
            if score > 0:
                scored.append((score, record))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [record for _, record in scored]

    async def _semantic(
        self,
        query: str,
        candidates: List[MemoryRecord],
        threshold: Optional[float],
    ) -> List[MemoryRecord]:
        if self.embedding_provider is None or not candidates:
            return []
        if any(not record.embedding for record in candidates):
            return []
        query_vector = await self.embedding_provider.embed(query)
        if not query_vector:
            return []
        cutoff = self.semantic_threshold if threshold is None else threshold
        scored = []
        for record in candidates:
            similarity = cosine_similarity(query_vector, record.embedding)
            if similarity >= cutoff:
                scored.append((similarity, record))
        if not scored:
            logger.debug("No candidate reached similarity %.2f; using keywords", cutoff)
        scored.sort(key=lambda item: item[0], reverse=True)
        return [record for _, record in scored]

    def patterns(self) -> Dict[str, int]:
        return dict(self.retrieval_patterns)
