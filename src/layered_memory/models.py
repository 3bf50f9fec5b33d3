"""Layered memory core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class EntityType(str, Enum):
    PERSON = "PERSON"
    ORG = "ORG"
    PRODUCT = "PRODUCT"
    DATE = "DATE"
    PREFERENCE = "PREFERENCE"
    CORRECTION = "CORRECTION"
    LOCATION = "LOCATION"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    PROJECT = "PROJECT"


class ChunkType(str, Enum):
    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    SYSTEM_INFO = "system_info"
    CORRECTION = "correction"
    PREFERENCE = "preference"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class LayerName(str, Enum):
    CRITICAL = "critical"
    RECENT = "recent"
    SESSION = "session"
    USER_PROFILE = "user_profile"


# Fixed presentation order of layers in the assembled context
PRESENTATION_ORDER: tuple[LayerName, ...] = (
    LayerName.CRITICAL,
    LayerName.RECENT,
    LayerName.SESSION,
    LayerName.USER_PROFILE,
)


class Entity(BaseModel):
    """A typed span extracted from message text."""

    text: str
    type: EntityType
    confidence: float = Field(ge=0.0, le=1.0)
    start_char: int = 0
    end_char: int = 0
    canonical_form: str | None = None
    context: str | None = None

    def overlaps(self, other: "Entity") -> bool:
        return not (
            self.end_char <= other.start_char or other.end_char <= self.start_char
        )


class ChunkEmbeddings(BaseModel):
    """The three fixed-dimension vectors stored with every chunk."""

    semantic: list[float]
    entity: list[float]
    intent: list[float]


class ChunkMetadata(BaseModel):
    turn_number: int
    speaker: Speaker
    intent: str = "statement"
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    has_corrections: bool = False
    references_past: bool = False
    topic_tags: list[str] = Field(default_factory=list)


class MemoryChunk(BaseModel):
    """One immutable unit of conversational memory."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_uuid)
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    conversation_id: str
    user_id: str
    workspace_id: str
    chunk_type: ChunkType
    importance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    entities: list[Entity] = Field(default_factory=list)
    embeddings: ChunkEmbeddings
    metadata: ChunkMetadata


class CommunicationStyle(BaseModel):
    formality: str = "mixed"  # "formal", "casual", "mixed"
    detail_preference: str = "mixed"  # "brief", "detailed", "mixed"
    interaction_patterns: list[str] = Field(default_factory=list)


class LongTermContext(BaseModel):
    work_domain: str | None = None
    projects: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)
    expertise_areas: list[str] = Field(default_factory=list)


class CorrectionRecord(BaseModel):
    created_at: datetime = Field(default_factory=_utcnow)
    old_value: str = ""
    new_value: str
    context: str = ""


class UserMemory(BaseModel):
    """Durable cross-conversation profile of a user."""

    user_id: str
    workspace_id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    communication_style: CommunicationStyle = Field(
        default_factory=CommunicationStyle
    )
    long_term_context: LongTermContext = Field(default_factory=LongTermContext)
    corrections_history: list[CorrectionRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    last_updated: datetime = Field(default_factory=_utcnow)


class UserMemoryUpdate(BaseModel):
    """Incremental profile changes derived from one user message.

    Applied with merge semantics: scalar fields only fill or replace when
    set, preferences are merged key by key, list fields are extended without
    duplicates and corrections are appended.
    """

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    work_domain: str | None = None
    projects: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)
    corrections: list[CorrectionRecord] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.name or self.email or self.phone or self.preferences
            or self.work_domain or self.projects or self.interests
            or self.corrections
        )

    def apply_to(self, memory: UserMemory) -> UserMemory:
        """Return a copy of *memory* with this update merged in."""
        merged = memory.model_copy(deep=True)
        if self.name:
            merged.name = self.name
        if self.email:
            merged.email = self.email
        if self.phone:
            merged.phone = self.phone
        merged.preferences.update(self.preferences)

        ltc = merged.long_term_context
        if self.work_domain:
            ltc.work_domain = self.work_domain
        for project in self.projects:
            if project not in ltc.projects:
                ltc.projects.append(project)
        for interest in self.interests:
            if interest not in ltc.interests:
                ltc.interests.append(interest)

        merged.corrections_history.extend(self.corrections)
        merged.last_updated = _utcnow()
        return merged


class ScoredChunk(BaseModel):
    """A chunk returned by a similarity search, with its signal values."""

    chunk: MemoryChunk
    score: float = 0.0
    signals: dict[str, float] = Field(default_factory=dict)


class ContextLayer(BaseModel):
    """Output of one layer retriever: pre-trimmed text plus its sources."""

    name: LayerName
    content: str = ""
    sources: list[str] = Field(default_factory=list)
    token_count: int = 0
    priority: float = 0.5

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() or self.token_count <= 0


class OptimizationInput(BaseModel):
    recent: ContextLayer
    session: ContextLayer
    user_profile: ContextLayer
    critical: ContextLayer
    total_budget: int

    def layers(self) -> list[ContextLayer]:
        return [self.critical, self.recent, self.session, self.user_profile]


class OptimizedContext(BaseModel):
    """Merged, bounded context handed to the downstream model call."""

    content: str = ""
    sources: list[str] = Field(default_factory=list)
    token_count: int = 0
    layers: dict[str, int] = Field(
        default_factory=lambda: {name.value: 0 for name in PRESENTATION_ORDER}
    )
    optimizations: list[str] = Field(default_factory=list)


class ScoringFactors(BaseModel):
    entity_score: float = 0.0
    pattern_score: float = 0.0
    context_score: float = 0.0
    correction_score: float = 0.0
    preference_score: float = 0.0
    question_score: float = 0.0
    reference_score: float = 0.0
    length_score: float = 0.0
    engagement_score: float = 0.5


class ScoredMessage(BaseModel):
    content: str
    importance_score: float
    factors: ScoringFactors
    reasoning: str
    entities: list[Entity] = Field(default_factory=list)
