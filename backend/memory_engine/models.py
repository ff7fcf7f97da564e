"""
Domain records shared by the store backends, the retrieval engine and callers.

Emotional state and personality traits are explicit named-field records; an
unknown key is a ``TypeError`` at construction time instead of a silent no-op.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

PERSISTED_IMPORTANCE_RANGE = (0, 10)
EPHEMERAL_IMPORTANCE_RANGE = (1, 10)
RELATIONSHIP_DIMENSIONS = ("trust", "respect", "fear", "loyalty")
DEFAULT_COUNTERPARTY_TYPE = "PLAYER"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as stored by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


def clamp_importance(value: Any, bounds: tuple = PERSISTED_IMPORTANCE_RANGE) -> int:
    low, high = bounds
    try:
        numeric = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        numeric = low
    return max(low, min(high, numeric))


def clamp_unit(value: Any) -> float:
    """Clamp a relationship dimension into [-1, 1]."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if numeric != numeric:
        return 0.0
    return max(-1.0, min(1.0, numeric))


def clamp_strength(value: Any) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if numeric != numeric:
        return 0.0
    return max(0.0, min(1.0, numeric))


class ContextType(str, Enum):
    GENERAL = "general"
    CONVERSATION = "conversation"
    GAME_SESSION = "game_session"
    FACTION_ACTIVITY = "faction_activity"
    PLAYER_INTERACTION = "player_interaction"
    EVENT = "event"
    MISSION = "mission"
    RELATIONSHIP = "relationship"

    @classmethod
    def coerce(cls, value: Any) -> "ContextType":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            return cls.GENERAL


@dataclass
class MemoryRecord:
    id: str
    agent_id: str
    content: str
    context_type: ContextType = ContextType.GENERAL
    counterparty_id: Optional[str] = None
    session_id: Optional[str] = None
    emotional_context: str = ""
    importance: int = 5
    strength: float = 1.0
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    related_memory_ids: List[str] = field(default_factory=list)

    def to_dict(self, include_embedding: bool = True) -> Dict[str, Any]:
        payload = {
            "id": self.id,
            "agent_id": self.agent_id,
            "content": self.content,
            "context_type": self.context_type.value,
            "counterparty_id": self.counterparty_id,
            "session_id": self.session_id,
            "emotional_context": self.emotional_context,
            "importance": self.importance,
            "strength": self.strength,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "related_memory_ids": list(self.related_memory_ids),
        }
        if include_embedding:
            payload["embedding"] = list(self.embedding) if self.embedding else None
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MemoryRecord":
        embedding = payload.get("embedding")
        return cls(
            id=str(payload["id"]),
            agent_id=str(payload["agent_id"]),
            content=str(payload.get("content") or ""),
            context_type=ContextType.coerce(payload.get("context_type")),
            counterparty_id=payload.get("counterparty_id"),
            session_id=payload.get("session_id"),
            emotional_context=str(payload.get("emotional_context") or ""),
            importance=int(payload.get("importance", 5)),
            strength=clamp_strength(payload.get("strength", 1.0)),
            tags=[str(tag) for tag in payload.get("tags") or []],
            embedding=[float(v) for v in embedding] if embedding else None,
            metadata=dict(payload.get("metadata") or {}),
            created_at=parse_datetime(payload.get("created_at")) or utc_now(),
            related_memory_ids=[
                str(item) for item in payload.get("related_memory_ids") or []
            ],
        )


@dataclass
class RelationshipRecord:
    agent_id: str
    counterparty_id: str
    counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE
    trust: float = 0.0
    respect: float = 0.0
    fear: float = 0.0
    loyalty: float = 0.0
    last_interaction_at: Optional[datetime] = None

    @classmethod
    def neutral(
        cls,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
    ) -> "RelationshipRecord":
        return cls(agent_id, counterparty_id, counterparty_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "counterparty_id": self.counterparty_id,
            "counterparty_type": self.counterparty_type,
            "trust": self.trust,
            "respect": self.respect,
            "fear": self.fear,
            "loyalty": self.loyalty,
            "last_interaction_at": (
                self.last_interaction_at.isoformat() if self.last_interaction_at else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RelationshipRecord":
        return cls(
            agent_id=str(payload["agent_id"]),
            counterparty_id=str(payload["counterparty_id"]),
            counterparty_type=str(
                payload.get("counterparty_type") or DEFAULT_COUNTERPARTY_TYPE
            ),
            trust=clamp_unit(payload.get("trust", 0.0)),
            respect=clamp_unit(payload.get("respect", 0.0)),
            fear=clamp_unit(payload.get("fear", 0.0)),
            loyalty=clamp_unit(payload.get("loyalty", 0.0)),
            last_interaction_at=parse_datetime(payload.get("last_interaction_at")),
        )


@dataclass
class RelationshipChanges:
    """Requested relationship values; ``None`` means "leave untouched"."""

    trust: Optional[float] = None
    respect: Optional[float] = None
    fear: Optional[float] = None
    loyalty: Optional[float] = None

    def supplied(self) -> Dict[str, float]:
        return {
            name: clamp_unit(getattr(self, name))
            for name in RELATIONSHIP_DIMENSIONS
            if getattr(self, name) is not None
        }


class _ScalarRecord:
    """Shared helpers for named-scalar records."""

    @classmethod
    def field_names(cls) -> List[str]:
        return [item.name for item in fields(cls)]

    def to_dict(self) -> Dict[str, float]:
        return {key: float(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]):
        baseline = cls()
        if not payload:
            return baseline
        values = {}
        for name in cls.field_names():
            raw = payload.get(name, getattr(baseline, name))
            try:
                values[name] = float(raw)
            except (TypeError, ValueError):
                values[name] = getattr(baseline, name)
        return cls(**values)


@dataclass
class EmotionalState(_ScalarRecord):
    happiness: float = 0.5
    anger: float = 0.2
    fear: float = 0.3
    excitement: float = 0.4
    stress: float = 0.3
    confidence: float = 0.6

    @property
    def dominant_emotion(self) -> str:
        # max() keeps the first maximal element, i.e. the first declared field.
        return max(self.field_names(), key=lambda name: getattr(self, name))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = super().to_dict()
        payload["dominant_emotion"] = self.dominant_emotion
        return payload


@dataclass
class PersonalityTraits(_ScalarRecord):
    aggressiveness: float = 0.5
    loyalty: float = 0.6
    intelligence: float = 0.7
    greed: float = 0.4
    humor: float = 0.5
    trustworthiness: float = 0.6


@dataclass
class AgentProfile:
    agent_id: str
    emotional_state: EmotionalState = field(default_factory=EmotionalState)
    personality_traits: PersonalityTraits = field(default_factory=PersonalityTraits)


@dataclass
class MemoryContext:
    recent_memories: List[MemoryRecord] = field(default_factory=list)
    relationships: List[RelationshipRecord] = field(default_factory=list)
    emotional_state: EmotionalState = field(default_factory=EmotionalState)
    personality_traits: PersonalityTraits = field(default_factory=PersonalityTraits)

    @classmethod
    def neutral(cls) -> "MemoryContext":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recent_memories": [
                memory.to_dict(include_embedding=False) for memory in self.recent_memories
            ],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "emotional_state": self.emotional_state.to_dict(),
            "personality_traits": self.personality_traits.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MemoryContext":
        return cls(
            recent_memories=[
                MemoryRecord.from_dict(item) for item in payload.get("recent_memories") or []
            ],
            relationships=[
                RelationshipRecord.from_dict(item)
                for item in payload.get("relationships") or []
            ],
            emotional_state=EmotionalState.from_dict(payload.get("emotional_state")),
            personality_traits=PersonalityTraits.from_dict(
                payload.get("personality_traits")
            ),
        )


@dataclass
class ContextFilter:
    """Exact-match filter; every supplied field must equal the record's field."""

    agent_id: Optional[str] = None
    context_type: Optional[ContextType] = None
    session_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.context_type is not None:
            self.context_type = ContextType.coerce(self.context_type)

    def is_empty(self) -> bool:
        return (
            self.agent_id is None
            and self.context_type is None
            and self.session_id is None
            and self.counterparty_id is None
            and not self.metadata
        )

    def matches(self, record: MemoryRecord) -> bool:
        if self.agent_id is not None and record.agent_id != self.agent_id:
            return False
        if self.context_type is not None and record.context_type != self.context_type:
            return False
        if self.session_id is not None and record.session_id != self.session_id:
            return False
        if (
            self.counterparty_id is not None
            and record.counterparty_id != self.counterparty_id
        ):
            return False
        if self.metadata:
            record_metadata = record.metadata or {}
            for key, value in self.metadata.items():
                if key not in record_metadata or record_metadata[key] != value:
                    return False
        return True


@dataclass
class SearchOptions:
    query: str = ""
    limit: int = 10
    context_filter: Optional[ContextFilter] = None
    min_importance: Optional[int] = None
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None
    semantic_threshold: Optional[float] = None
    # Only records with strength strictly above this value are candidates.
    strength_above: Optional[float] = None


@dataclass
class ForgetCriteria:
    memory_ids: List[str] = field(default_factory=list)
    context_filter: Optional[ContextFilter] = None
    older_than: Optional[datetime] = None
