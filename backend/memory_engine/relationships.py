"""Relationship tracker: clamped upserts keyed by (agent, counterparty, type)."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Union

from .backend import MemoryBackend
from .models import (
    DEFAULT_COUNTERPARTY_TYPE,
    RelationshipChanges,
    RelationshipRecord,
    utc_now,
)

RELATIONSHIP_LIMIT = 10


class RelationshipTracker:
    def __init__(self, backend: MemoryBackend):
        self.backend = backend

    async def upsert(
        self,
        agent_id: str,
        counterparty_id: str,
        changes: Union[RelationshipChanges, dict, None] = None,
        *,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
        interaction_at: Optional[datetime] = None,
    ) -> RelationshipRecord:
        """
        Create or update one relationship.

        Supplied dimensions are clamped to [-1, 1]; missing ones keep their
        stored value (0 on creation). The interaction time is always refreshed.
        """
        if not agent_id or not counterparty_id:
            raise ValueError("agent_id and counterparty_id are required")
        if changes is None:
            changes = RelationshipChanges()
        elif isinstance(changes, dict):
            changes = RelationshipChanges(**changes)
        return await self.backend.upsert_relationship(
            agent_id,
            counterparty_id,
            changes.supplied(),
            counterparty_type=counterparty_type or DEFAULT_COUNTERPARTY_TYPE,
            interaction_at=interaction_at or utc_now(),
        )

    async def get(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
    ) -> RelationshipRecord:
        record = await self.backend.get_relationship(
            agent_id, counterparty_id, counterparty_type
        )
        if record is None:
            return RelationshipRecord.neutral(agent_id, counterparty_id, counterparty_type)
        return record

    async def recent(
        self,
        agent_id: str,
        limit: int = RELATIONSHIP_LIMIT,
        counterparty_type: Optional[str] = DEFAULT_COUNTERPARTY_TYPE,
    ) -> List[RelationshipRecord]:
        return await self.backend.list_relationships(
            agent_id, limit=limit, counterparty_type=counterparty_type
        )
