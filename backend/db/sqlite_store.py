"""
SQLite storage backend for the NPC memory engine.

This module implements the persistent backend with:
- npc_memories: append-only memory rows, decayed in place by strength
- npc_relationships: one row per (npc, target, target type), upserted
- npc_profiles: explicit emotional-state and personality columns

Importance is clamped into [0, 10] before a row is written.
"""

import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from memory_engine.backend import MemoryBackend
from memory_engine.index import SecondaryIndex
from memory_engine.models import (
    PERSISTED_IMPORTANCE_RANGE,
    AgentProfile,
    ContextFilter,
    ContextType,
    EmotionalState,
    MemoryRecord,
    PersonalityTraits,
    RelationshipRecord,
    as_utc,
    clamp_strength,
    utc_now,
)
from .migration_runner import apply_pending_migrations

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register an explicit sqlite adapter for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC datetime for the SQLite columns."""
    normalized = as_utc(value)
    return normalized.replace(tzinfo=None) if normalized is not None else None


def _utc_now_naive() -> datetime:
    return utc_now().replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class NpcMemory(Base):
    """A single memory owned by an NPC or companion."""

    __tablename__ = "npc_memories"

    id = Column(String(64), primary_key=True)
    npc_id = Column(String(128), nullable=False, index=True)
    player_id = Column(String(128), nullable=True)
    memory_type = Column(String(32), nullable=False, default=ContextType.GENERAL.value)
    session_id = Column(String(128), nullable=True)
    content = Column(Text, nullable=False)
    emotional_context = Column(String(64), nullable=False, default="")
    importance = Column(Integer, nullable=False, default=5)
    decay_factor = Column(Float, nullable=False, default=1.0)
    tags = Column(Text, nullable=False, default="[]")
    embedding = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, nullable=False, default=_utc_now_naive)
    related_ids = Column(Text, nullable=False, default="[]")


class NpcRelationship(Base):
    """Trust dimensions between an NPC and one counterparty."""

    __tablename__ = "npc_relationships"
    __table_args__ = (
        UniqueConstraint(
            "npc_id", "target_id", "target_type", name="uq_npc_relationships_target"
        ),
        Index("idx_npc_relationships_npc", "npc_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    npc_id = Column(String(128), nullable=False)
    target_id = Column(String(128), nullable=False)
    target_type = Column(String(32), nullable=False, default="PLAYER")
    trust = Column(Float, nullable=False, default=0.0)
    respect = Column(Float, nullable=False, default=0.0)
    fear = Column(Float, nullable=False, default=0.0)
    loyalty = Column(Float, nullable=False, default=0.0)
    last_interaction = Column(DateTime, nullable=True)


class NpcProfile(Base):
    """Emotional state and personality traits of an NPC."""

    __tablename__ = "npc_profiles"

    npc_id = Column(String(128), primary_key=True)
    happiness = Column(Float, nullable=False, default=0.5)
    anger = Column(Float, nullable=False, default=0.2)
    fear = Column(Float, nullable=False, default=0.3)
    excitement = Column(Float, nullable=False, default=0.4)
    stress = Column(Float, nullable=False, default=0.3)
    confidence = Column(Float, nullable=False, default=0.6)
    aggressiveness = Column(Float, nullable=False, default=0.5)
    loyalty = Column(Float, nullable=False, default=0.6)
    intelligence = Column(Float, nullable=False, default=0.7)
    greed = Column(Float, nullable=False, default=0.4)
    humor = Column(Float, nullable=False, default=0.5)
    trustworthiness = Column(Float, nullable=False, default=0.6)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class SchemaMigration(Base):
    """Applied schema migration records."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)


# =============================================================================
# Row mapping
# =============================================================================


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def _row_to_record(row: NpcMemory) -> MemoryRecord:
    embedding = _loads(row.embedding, None)
    if embedding is not None:
        try:
            embedding = [float(v) for v in embedding]
        except (TypeError, ValueError):
            embedding = None
    return MemoryRecord(
        id=row.id,
        agent_id=row.npc_id,
        content=row.content or "",
        context_type=ContextType.coerce(row.memory_type),
        counterparty_id=row.player_id,
        session_id=row.session_id,
        emotional_context=row.emotional_context or "",
        importance=int(row.importance or 0),
        strength=clamp_strength(row.decay_factor),
        tags=[str(tag) for tag in _loads(row.tags, [])],
        embedding=embedding,
        metadata=dict(_loads(row.metadata_json, {}) or {}),
        created_at=as_utc(row.created_at) or utc_now(),
        related_memory_ids=[str(item) for item in _loads(row.related_ids, []) or []],
    )


def _row_to_relationship(row: NpcRelationship) -> RelationshipRecord:
    return RelationshipRecord(
        agent_id=row.npc_id,
        counterparty_id=row.target_id,
        counterparty_type=row.target_type,
        trust=float(row.trust or 0.0),
        respect=float(row.respect or 0.0),
        fear=float(row.fear or 0.0),
        loyalty=float(row.loyalty or 0.0),
        last_interaction_at=as_utc(row.last_interaction),
    )


_EMOTION_COLUMNS = EmotionalState.field_names()
_TRAIT_COLUMNS = PersonalityTraits.field_names()


# =============================================================================
# SQLite Store
# =============================================================================


class SQLiteMemoryStore(MemoryBackend):
    """
    Async SQLite backend.

    Args:
        database_url: SQLAlchemy async URL, e.g.
                      "sqlite+aiosqlite:///npc_memory.db"
    """

    name = "sqlite"
    importance_range = PERSISTED_IMPORTANCE_RANGE

    def __init__(
        self,
        database_url: str,
        index: Optional[SecondaryIndex] = None,
        timeout_sec: float = 5.0,
    ):
        super().__init__(index=index, timeout_sec=timeout_sec)
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    def transient_errors(self) -> Tuple[type, ...]:
        return (SQLAlchemyError, sqlite3.Error, OSError)

    async def init(self) -> None:
        """Create tables, apply migrations, then warm the index."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.run_sync(self._migrate_add_related_ids)
        await apply_pending_migrations(self.database_url)
        await super().init()

    @staticmethod
    def _migrate_add_related_ids(connection) -> None:
        """Add the related_ids column to npc_memories tables created before it existed."""
        columns = [col["name"] for col in inspect(connection).get_columns("npc_memories")]
        if "related_ids" not in columns:
            connection.execute(
                text("ALTER TABLE npc_memories ADD COLUMN related_ids TEXT NOT NULL DEFAULT '[]'")
            )

    async def close(self) -> None:
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    # =========================================================================
    # Memory records
    # =========================================================================

    async def _insert(self, record: MemoryRecord) -> None:
        async with self.session() as session:
            session.add(
                NpcMemory(
                    id=record.id,
                    npc_id=record.agent_id,
                    player_id=record.counterparty_id,
                    memory_type=record.context_type.value,
                    session_id=record.session_id,
                    content=record.content,
                    emotional_context=record.emotional_context,
                    importance=record.importance,
                    decay_factor=record.strength,
                    tags=json.dumps(record.tags, ensure_ascii=False),
                    embedding=(
                        json.dumps(record.embedding, separators=(",", ":"))
                        if record.embedding
                        else None
                    ),
                    metadata_json=json.dumps(record.metadata, ensure_ascii=False, default=str),
                    created_at=_to_db_datetime(record.created_at),
                    related_ids=json.dumps(record.related_memory_ids),
                )
            )

    async def _remove(self, memory_id: str) -> Optional[MemoryRecord]:
        async with self.session() as session:
            row = await session.get(NpcMemory, memory_id)
            if row is None:
                return None
            record = _row_to_record(row)
            await session.execute(delete(NpcMemory).where(NpcMemory.id == memory_id))
            return record

    async def _set_strength(self, memory_id: str, value: float) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(NpcMemory).where(NpcMemory.id == memory_id).values(decay_factor=value)
            )
            return bool(result.rowcount)

    async def _get(self, memory_id: str) -> Optional[MemoryRecord]:
        async with self.session() as session:
            row = await session.get(NpcMemory, memory_id)
            return _row_to_record(row) if row is not None else None

    async def _get_many(self, memory_ids: List[str]) -> List[MemoryRecord]:
        async with self.session() as session:
            rows = await session.execute(select(NpcMemory).where(NpcMemory.id.in_(memory_ids)))
            return [_row_to_record(row) for row in rows.scalars().all()]

    async def _find(
        self,
        context_filter: ContextFilter,
        *,
        min_importance: Optional[int],
        time_start: Optional[datetime],
        time_end: Optional[datetime],
    ) -> List[MemoryRecord]:
        query = select(NpcMemory)
        if context_filter.agent_id is not None:
            query = query.where(NpcMemory.npc_id == context_filter.agent_id)
        if context_filter.context_type is not None:
            query = query.where(NpcMemory.memory_type == context_filter.context_type.value)
        if context_filter.session_id is not None:
            query = query.where(NpcMemory.session_id == context_filter.session_id)
        if context_filter.counterparty_id is not None:
            query = query.where(NpcMemory.player_id == context_filter.counterparty_id)
        if min_importance is not None:
            query = query.where(NpcMemory.importance >= int(min_importance))
        if time_start is not None:
            query = query.where(NpcMemory.created_at >= _to_db_datetime(time_start))
        if time_end is not None:
            query = query.where(NpcMemory.created_at <= _to_db_datetime(time_end))
        query = query.order_by(NpcMemory.created_at.desc(), NpcMemory.id.desc())

        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        records = [_row_to_record(row) for row in rows]
        # Metadata lives in a JSON column; match it after the SQL narrowing.
        return [record for record in records if context_filter.matches(record)]

    async def _decay_candidates(self, cutoff: datetime) -> List[MemoryRecord]:
        async with self.session() as session:
            rows = await session.execute(
                select(NpcMemory)
                .where(NpcMemory.created_at < _to_db_datetime(cutoff))
                .where(NpcMemory.decay_factor > 0)
                .order_by(NpcMemory.created_at.asc())
            )
            return [_row_to_record(row) for row in rows.scalars().all()]

    async def _list_all(self) -> List[MemoryRecord]:
        async with self.session() as session:
            rows = await session.execute(select(NpcMemory).order_by(NpcMemory.created_at.asc()))
            return [_row_to_record(row) for row in rows.scalars().all()]

    # =========================================================================
    # Relationships
    # =========================================================================

    async def _upsert_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str,
        values: Dict[str, float],
        interaction_at: datetime,
    ) -> RelationshipRecord:
        async with self.session() as session:
            result = await session.execute(
                select(NpcRelationship)
                .where(NpcRelationship.npc_id == agent_id)
                .where(NpcRelationship.target_id == counterparty_id)
                .where(NpcRelationship.target_type == counterparty_type)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = NpcRelationship(
                    npc_id=agent_id,
                    target_id=counterparty_id,
                    target_type=counterparty_type,
                    trust=0.0,
                    respect=0.0,
                    fear=0.0,
                    loyalty=0.0,
                )
                session.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.last_interaction = _to_db_datetime(interaction_at)
            await session.flush()
            return _row_to_relationship(row)

    async def _get_relationship(
        self, agent_id: str, counterparty_id: str, counterparty_type: str
    ) -> Optional[RelationshipRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(NpcRelationship)
                .where(NpcRelationship.npc_id == agent_id)
                .where(NpcRelationship.target_id == counterparty_id)
                .where(NpcRelationship.target_type == counterparty_type)
            )
            row = result.scalar_one_or_none()
            return _row_to_relationship(row) if row is not None else None

    async def _list_relationships(
        self, agent_id: str, limit: int, counterparty_type: Optional[str]
    ) -> List[RelationshipRecord]:
        query = select(NpcRelationship).where(NpcRelationship.npc_id == agent_id)
        if counterparty_type is not None:
            query = query.where(NpcRelationship.target_type == counterparty_type)
        query = query.order_by(
            NpcRelationship.last_interaction.desc(), NpcRelationship.id.desc()
        ).limit(limit)
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_row_to_relationship(row) for row in rows]

    # =========================================================================
    # Profiles
    # =========================================================================

    async def _get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        async with self.session() as session:
            row = await session.get(NpcProfile, agent_id)
            if row is None:
                return None
            return AgentProfile(
                agent_id=row.npc_id,
                emotional_state=EmotionalState(
                    **{name: float(getattr(row, name)) for name in _EMOTION_COLUMNS}
                ),
                personality_traits=PersonalityTraits(
                    **{name: float(getattr(row, name)) for name in _TRAIT_COLUMNS}
                ),
            )

    async def _set_profile(self, profile: AgentProfile) -> None:
        values: Dict[str, Any] = {}
        values.update(
            {name: getattr(profile.emotional_state, name) for name in _EMOTION_COLUMNS}
        )
        values.update(
            {name: getattr(profile.personality_traits, name) for name in _TRAIT_COLUMNS}
        )
        async with self.session() as session:
            row = await session.get(NpcProfile, profile.agent_id)
            if row is None:
                session.add(NpcProfile(npc_id=profile.agent_id, **values))
                return
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = _utc_now_naive()
