"""
Pond domain value objects.

The memory aggregate and its children are immutable. Every mutation returns a
new value; a STORED memory refuses further mutation.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional, Sequence

import pond.config as config
from pond.errors import MemoryStateError, ValidationIssue
from pond.slugify import slugify
from pond.validators import validate_required_text, validate_vector

VALID_DIMENSIONS = (128, 256, 384, 512, 768, 1024, 1536, 2048, 4096)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# =============================================================================
# Enums
# =============================================================================

class MemoryStatus(str, PyEnum):
    DRAFT = "DRAFT"
    STORED = "STORED"


class SourceType(str, PyEnum):
    EXTERNAL_AGENT = "external-agent"
    MANUAL = "manual"
    IMPORT = "import"
    API = "api"


class SimilarityMetric(str, PyEnum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT = "dot"


# =============================================================================
# Children
# =============================================================================

@dataclass(frozen=True)
class Embedding:
    vector: tuple[float, ...]
    model: str = "unknown"
    dimensions: int = field(init=False)

    def __post_init__(self) -> None:
        validate_vector(self.vector, VALID_DIMENSIONS)
        object.__setattr__(self, "vector", tuple(float(value) for value in self.vector))
        object.__setattr__(self, "dimensions", len(self.vector))

    def cosine_similarity(self, other: "Embedding") -> float:
        if self.dimensions != other.dimensions:
            raise ValidationIssue(
                "Cannot compare embeddings with different dimensions",
                field="dimensions",
                error_type="dimension_mismatch",
            )
        dot = sum(a * b for a, b in zip(self.vector, other.vector))
        norm_a = math.sqrt(sum(a * a for a in self.vector))
        norm_b = math.sqrt(sum(b * b for b in other.vector))
        magnitude = norm_a * norm_b
        if magnitude == 0:
            return 0.0
        # float rounding can push the ratio slightly past 1
        return max(-1.0, min(1.0, dot / magnitude))


@dataclass(frozen=True)
class Source:
    type: SourceType
    context: str
    created_at: datetime = field(default_factory=_utcnow)
    hash: str = field(init=False)

    def __post_init__(self) -> None:
        try:
            source_type = SourceType(self.type)
        except ValueError as exc:
            raise ValidationIssue("Invalid source type", field="source.type", error_type="invalid_value") from exc
        validate_required_text(self.context, "source.context", config.MAX_SOURCE_CONTEXT_LENGTH)
        context = self.context.strip()
        object.__setattr__(self, "type", source_type)
        object.__setattr__(self, "context", context)
        digest = hashlib.sha256(f"{source_type.value}:{context}".encode("utf-8")).hexdigest()
        object.__setattr__(self, "hash", digest)

    def display(self, max_context_length: int = 50) -> str:
        context = self.context
        if len(context) > max_context_length:
            context = context[:max_context_length] + "..."
        return f"{self.type.value}: {context}"


@dataclass(frozen=True)
class Tag:
    raw: str
    normalized: str = field(init=False)
    slug: str = field(init=False)

    def __post_init__(self) -> None:
        validate_required_text(self.raw, "tag", config.MAX_LABEL_LENGTH)
        object.__setattr__(self, "normalized", "-".join(self.raw.lower().split()))
        object.__setattr__(self, "slug", slugify(self.raw))


@dataclass(frozen=True)
class Entity:
    text: str
    type: str

    def __post_init__(self) -> None:
        validate_required_text(self.text, "entity.text", config.MAX_LABEL_LENGTH)
        validate_required_text(self.type, "entity.type", config.MAX_LABEL_LENGTH)


@dataclass(frozen=True)
class Action:
    action: str
    slug: str = field(init=False)

    def __post_init__(self) -> None:
        validate_required_text(self.action, "action", config.MAX_LABEL_LENGTH)
        object.__setattr__(self, "slug", slugify(self.action))


# =============================================================================
# Aggregate root
# =============================================================================

@dataclass(frozen=True)
class Memory:
    content: str
    status: MemoryStatus = MemoryStatus.DRAFT
    created_at: datetime = field(default_factory=_utcnow)
    tags: tuple[Tag, ...] = ()
    entities: tuple[Entity, ...] = ()
    actions: tuple[Action, ...] = ()
    embedding: Optional[Embedding] = None
    source: Optional[Source] = None
    id: Optional[str] = None
    content_hash: str = field(init=False)

    def __post_init__(self) -> None:
        validate_required_text(self.content, "content", config.MAX_CONTENT_LENGTH)
        object.__setattr__(self, "status", MemoryStatus(self.status))
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "entities", tuple(self.entities))
        object.__setattr__(self, "actions", tuple(self.actions))
        object.__setattr__(self, "content_hash", content_hash(self.content))

    @classmethod
    def reconstruct(
        cls,
        *,
        memory_id: str,
        content: str,
        status: MemoryStatus | str,
        created_at: datetime,
        embedding: Optional[Embedding] = None,
        source: Optional[Source] = None,
        tags: Sequence[Tag] = (),
        entities: Sequence[Entity] = (),
        actions: Sequence[Action] = (),
    ) -> "Memory":
        """Rebuild a persisted aggregate, including its terminal STORED state."""
        return cls(
            content=content,
            status=MemoryStatus(status),
            created_at=created_at,
            tags=tuple(tags),
            entities=tuple(entities),
            actions=tuple(actions),
            embedding=embedding,
            source=source,
            id=str(memory_id),
        )

    @property
    def is_stored(self) -> bool:
        return self.status == MemoryStatus.STORED

    def _ensure_not_stored(self) -> None:
        if self.is_stored:
            raise MemoryStateError("Cannot modify stored memory")

    def mark_as_stored(self) -> "Memory":
        return replace(self, status=MemoryStatus.STORED)

    def add_tag(self, tag: Tag) -> "Memory":
        self._ensure_not_stored()
        return replace(self, tags=self.tags + (tag,))

    def add_entity(self, entity: Entity) -> "Memory":
        self._ensure_not_stored()
        return replace(self, entities=self.entities + (entity,))

    def add_action(self, action: Action) -> "Memory":
        self._ensure_not_stored()
        return replace(self, actions=self.actions + (action,))

    def with_embedding(self, embedding: Embedding) -> "Memory":
        self._ensure_not_stored()
        return replace(self, embedding=embedding)

    def with_source(self, source: Source) -> "Memory":
        self._ensure_not_stored()
        return replace(self, source=source)


@dataclass(frozen=True)
class SaveResult:
    memory_id: str
    created: bool


@dataclass(frozen=True)
class SimilarResult:
    memory: Memory
    distance: float
    similarity: float
