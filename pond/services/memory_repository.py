"""
PostgreSQL persistence for memory aggregates.

Every operation binds the tenant before touching data; row-level security on
every table then keeps a tenant to its own rows. Writes run in one
transaction (the caller's, one opened on the caller's connection, or a new
one) so a partial aggregate is never visible.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional, TypeVar

from pgvector.sqlalchemy import Vector
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection

import pond.config as config
from pond.context import TenantContext
from pond.db import DatabaseConnection
from pond.errors import ValidationIssue
from pond.models import (
    Action,
    Embedding,
    Entity,
    Memory,
    MemoryStatus,
    SaveResult,
    SimilarityMetric,
    SimilarResult,
    Source,
    Tag,
)
from pond.validators import (
    is_uuid,
    validate_limit,
    validate_offset,
    validate_threshold,
    validate_tenant_id,
)

T = TypeVar("T")

logger = config.logger.getChild("repository")


# =============================================================================
# Statements
# =============================================================================

_INSERT_MEMORY_SQL = text(
    """
    INSERT INTO memories (tenant_id, content, content_hash, status, created_at)
    VALUES (CAST(:tenant_id AS uuid), :content, :content_hash, CAST(:status AS memory_status), :created_at)
    ON CONFLICT (tenant_id, content_hash) DO NOTHING
    RETURNING id
    """
)

_EXISTING_ID_SQL = text(
    """
    SELECT id FROM memories
    WHERE tenant_id = CAST(:tenant_id AS uuid) AND content_hash = :content_hash
    """
)

_INSERT_EMBEDDING_SQL = text(
    """
    INSERT INTO embeddings (memory_id, vector, dimensions, model)
    VALUES (CAST(:memory_id AS uuid), CAST(:vector AS vector), :dimensions, :model)
    ON CONFLICT (memory_id) DO NOTHING
    """
).bindparams(bindparam("vector", type_=Vector()))

_INSERT_SOURCE_SQL = text(
    """
    INSERT INTO sources (memory_id, type, context, hash, created_at)
    VALUES (CAST(:memory_id AS uuid), CAST(:type AS source_type), :context, :hash, :created_at)
    ON CONFLICT (memory_id) DO NOTHING
    """
)

_INSERT_TAGS_SQL = text(
    """
    INSERT INTO tags (memory_id, raw, normalized, slug)
    SELECT CAST(:memory_id AS uuid), t.raw, t.normalized, t.slug
    FROM unnest(CAST(:raws AS text[]), CAST(:normalized AS text[]), CAST(:slugs AS text[]))
        AS t(raw, normalized, slug)
    ON CONFLICT (memory_id, slug) DO NOTHING
    """
)

_INSERT_ENTITIES_SQL = text(
    """
    INSERT INTO entities (memory_id, text, type)
    SELECT CAST(:memory_id AS uuid), e.text, e.type
    FROM unnest(CAST(:texts AS text[]), CAST(:types AS text[])) AS e(text, type)
    ON CONFLICT (memory_id, text, type) DO NOTHING
    """
)

_INSERT_ACTIONS_SQL = text(
    """
    INSERT INTO actions (memory_id, action, slug)
    SELECT CAST(:memory_id AS uuid), a.action, a.slug
    FROM unnest(CAST(:actions AS text[]), CAST(:slugs AS text[])) AS a(action, slug)
    ON CONFLICT (memory_id, slug) DO NOTHING
    """
)

# One round trip: children are aggregated, never joined row-by-row
_FIND_BY_ID_SQL = text(
    """
    SELECT
        m.id, m.content, m.content_hash, m.status, m.created_at,
        e.vector AS embedding_vector, e.dimensions AS embedding_dimensions, e.model AS embedding_model,
        s.type AS source_type, s.context AS source_context, s.hash AS source_hash,
        s.created_at AS source_created_at,
        COALESCE(
            (SELECT json_agg(json_build_object('raw', t.raw, 'normalized', t.normalized, 'slug', t.slug)
                             ORDER BY t.created_at, t.slug)
             FROM tags t WHERE t.memory_id = m.id),
            CAST('[]' AS json)
        ) AS tags,
        COALESCE(
            (SELECT json_agg(json_build_object('text', ent.text, 'type', ent.type)
                             ORDER BY ent.created_at, ent.text)
             FROM entities ent WHERE ent.memory_id = m.id),
            CAST('[]' AS json)
        ) AS entities,
        COALESCE(
            (SELECT json_agg(json_build_object('action', a.action, 'slug', a.slug)
                             ORDER BY a.created_at, a.slug)
             FROM actions a WHERE a.memory_id = m.id),
            CAST('[]' AS json)
        ) AS actions
    FROM memories m
    LEFT JOIN embeddings e ON e.memory_id = m.id
    LEFT JOIN sources s ON s.memory_id = m.id
    WHERE m.id = CAST(:memory_id AS uuid)
      AND m.tenant_id = CAST(:tenant_id AS uuid)
    """
).columns(embedding_vector=Vector())

_DISTANCE_OPERATORS = {
    SimilarityMetric.COSINE: "<=>",
    SimilarityMetric.EUCLIDEAN: "<->",
    SimilarityMetric.DOT: "<#>",
}

# (metric, dimensions) pairs covered by a partial HNSW index
INDEXED_SIMILARITY = {
    (SimilarityMetric.COSINE, 768),
    (SimilarityMetric.COSINE, 1536),
}

_SEARCH_SQL = text(
    """
    SELECT m.id, ts_rank(to_tsvector('english', m.content), plainto_tsquery('english', :query)) AS rank
    FROM memories m
    WHERE m.tenant_id = CAST(:tenant_id AS uuid)
      AND to_tsvector('english', m.content) @@ plainto_tsquery('english', :query)
    ORDER BY rank DESC, m.created_at DESC
    LIMIT :limit
    """
)

_FIND_ALL_SQL = text(
    """
    SELECT m.id
    FROM memories m
    WHERE m.tenant_id = CAST(:tenant_id AS uuid)
    ORDER BY m.created_at DESC, m.id
    LIMIT :limit OFFSET :offset
    """
)

_DELETE_SQL = text(
    """
    DELETE FROM memories
    WHERE id = CAST(:memory_id AS uuid) AND tenant_id = CAST(:tenant_id AS uuid)
    """
)


def _indexed_similarity_sql(metric: SimilarityMetric, dimensions: int):
    operator = _DISTANCE_OPERATORS[metric]
    # Matches the partial HNSW index expression and predicate from migration 003.
    # Threshold filtering happens after the nearest-first LIMIT so the index
    # can drive the ordering.
    distance = f"(e.vector::vector({dimensions})) {operator} CAST(:query_vector AS vector({dimensions}))"
    return text(
        f"""
        WITH candidates AS (
            SELECT m.id, m.created_at, {distance} AS distance
            FROM embeddings e
            JOIN memories m ON m.id = e.memory_id
            WHERE m.tenant_id = CAST(:tenant_id AS uuid)
              AND e.dimensions = {dimensions}
            ORDER BY {distance}
            LIMIT :limit
        )
        SELECT id, distance FROM candidates
        WHERE distance <= :max_distance
        ORDER BY distance ASC, created_at DESC
        """
    ).bindparams(bindparam("query_vector", type_=Vector()))


def _similarity_sql(metric: SimilarityMetric, dimensions: int):
    if (metric, dimensions) in INDEXED_SIMILARITY:
        return _indexed_similarity_sql(metric, dimensions)
    operator = _DISTANCE_OPERATORS[metric]
    # Dimensions are filtered before any distance is computed; pgvector
    # refuses to compare vectors of different lengths.
    return text(
        f"""
        WITH candidates AS MATERIALIZED (
            SELECT m.id, m.created_at, e.vector
            FROM memories m
            JOIN embeddings e ON e.memory_id = m.id
            WHERE m.tenant_id = CAST(:tenant_id AS uuid)
              AND e.dimensions = :dimensions
        )
        SELECT id, distance FROM (
            SELECT c.id, c.created_at, (c.vector {operator} CAST(:query_vector AS vector)) AS distance
            FROM candidates c
        ) scored
        WHERE distance <= :max_distance
        ORDER BY distance ASC, created_at DESC
        LIMIT :limit
        """
    ).bindparams(bindparam("query_vector", type_=Vector()))


def similarity_from_distance(metric: SimilarityMetric, distance: float) -> float:
    if metric == SimilarityMetric.COSINE:
        return 1.0 - distance
    if metric == SimilarityMetric.EUCLIDEAN:
        return 1.0 / (1.0 + distance)
    # <#> is the negative inner product
    return -distance


def max_distance_for(metric: SimilarityMetric, threshold: float) -> float:
    if metric == SimilarityMetric.COSINE:
        return 1.0 - threshold
    if metric == SimilarityMetric.EUCLIDEAN:
        return threshold
    return -threshold


def _parse_metric(metric: SimilarityMetric | str) -> SimilarityMetric:
    try:
        return SimilarityMetric(metric)
    except ValueError as exc:
        raise ValidationIssue(
            "metric must be one of: cosine, euclidean, dot",
            field="metric",
            error_type="invalid_value",
        ) from exc


def _json_list(value: Any) -> list[dict]:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def _row_to_memory(row: Any) -> Memory:
    embedding = None
    if row["embedding_vector"] is not None:
        embedding = Embedding(
            vector=tuple(float(value) for value in row["embedding_vector"]),
            model=row["embedding_model"] or "unknown",
        )

    source = None
    if row["source_type"] is not None:
        source = Source(
            type=row["source_type"],
            context=row["source_context"],
            created_at=row["source_created_at"],
        )

    return Memory.reconstruct(
        memory_id=str(row["id"]),
        content=row["content"],
        status=row["status"],
        created_at=row["created_at"],
        embedding=embedding,
        source=source,
        tags=[Tag(item["raw"]) for item in _json_list(row["tags"])],
        entities=[Entity(item["text"], item["type"]) for item in _json_list(row["entities"])],
        actions=[Action(item["action"]) for item in _json_list(row["actions"])],
    )


class PostgresMemoryRepository:
    """Tenant-scoped persistence of memory aggregates."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _write(self, tenant_id: str, conn: Optional[Connection], fn: Callable[[Connection], T]) -> T:
        tenant_value = validate_tenant_id(tenant_id)

        def run(active: Connection) -> T:
            TenantContext(active).set_tenant(tenant_value)
            return fn(active)

        if conn is not None:
            if conn.in_transaction():
                return run(conn)
            with conn.begin():
                return run(conn)
        return self.db.with_transaction(run)

    def _read(self, tenant_id: str, conn: Optional[Connection], fn: Callable[[Connection], T]) -> T:
        tenant_value = validate_tenant_id(tenant_id)

        def run(active: Connection) -> T:
            TenantContext(active).set_tenant(tenant_value)
            return fn(active)

        if conn is not None:
            return run(conn)
        return self.db.with_connection(run)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, memory: Memory, tenant_id: str, conn: Optional[Connection] = None) -> SaveResult:
        """Insert the aggregate; a duplicate (tenant, content hash) is a no-op."""
        tenant_value = validate_tenant_id(tenant_id)
        return self._write(tenant_value, conn, lambda active: self._save(active, memory, tenant_value))

    def _save(self, conn: Connection, memory: Memory, tenant_id: str) -> SaveResult:
        memory_id = conn.execute(
            _INSERT_MEMORY_SQL,
            {
                "tenant_id": tenant_id,
                "content": memory.content,
                "content_hash": memory.content_hash,
                "status": MemoryStatus.STORED.value,
                "created_at": memory.created_at,
            },
        ).scalar()

        if memory_id is None:
            existing_id = conn.execute(
                _EXISTING_ID_SQL,
                {"tenant_id": tenant_id, "content_hash": memory.content_hash},
            ).scalar()
            logger.debug(f"Memory with hash {memory.content_hash[:12]} already exists; skipping children")
            return SaveResult(memory_id=str(existing_id) if existing_id is not None else None, created=False)

        memory_id = str(memory_id)
        if memory.embedding is not None:
            conn.execute(
                _INSERT_EMBEDDING_SQL,
                {
                    "memory_id": memory_id,
                    "vector": list(memory.embedding.vector),
                    "dimensions": memory.embedding.dimensions,
                    "model": memory.embedding.model,
                },
            )

        if memory.source is not None:
            conn.execute(
                _INSERT_SOURCE_SQL,
                {
                    "memory_id": memory_id,
                    "type": memory.source.type.value,
                    "context": memory.source.context,
                    "hash": memory.source.hash,
                    "created_at": memory.source.created_at,
                },
            )

        if memory.tags:
            conn.execute(
                _INSERT_TAGS_SQL,
                {
                    "memory_id": memory_id,
                    "raws": [tag.raw for tag in memory.tags],
                    "normalized": [tag.normalized for tag in memory.tags],
                    "slugs": [tag.slug for tag in memory.tags],
                },
            )

        if memory.entities:
            conn.execute(
                _INSERT_ENTITIES_SQL,
                {
                    "memory_id": memory_id,
                    "texts": [entity.text for entity in memory.entities],
                    "types": [entity.type for entity in memory.entities],
                },
            )

        if memory.actions:
            conn.execute(
                _INSERT_ACTIONS_SQL,
                {
                    "memory_id": memory_id,
                    "actions": [action.action for action in memory.actions],
                    "slugs": [action.slug for action in memory.actions],
                },
            )

        logger.info(
            f"Saved memory {memory_id} "
            f"(tags={len(memory.tags)}, entities={len(memory.entities)}, actions={len(memory.actions)})"
        )
        return SaveResult(memory_id=memory_id, created=True)

    def delete(self, memory_id: str, tenant_id: str, conn: Optional[Connection] = None) -> bool:
        tenant_value = validate_tenant_id(tenant_id)
        if not is_uuid(memory_id):
            return False

        def run(active: Connection) -> bool:
            result = active.execute(_DELETE_SQL, {"memory_id": memory_id, "tenant_id": tenant_value})
            return result.rowcount > 0

        deleted = self._write(tenant_value, conn, run)
        if deleted:
            logger.info(f"Deleted memory {memory_id}")
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_id(self, memory_id: str, tenant_id: str, conn: Optional[Connection] = None) -> Optional[Memory]:
        tenant_value = validate_tenant_id(tenant_id)
        if not is_uuid(memory_id):
            return None
        return self._read(tenant_value, conn, lambda active: self._load(active, memory_id, tenant_value))

    def _load(self, conn: Connection, memory_id: str, tenant_id: str) -> Optional[Memory]:
        row = conn.execute(_FIND_BY_ID_SQL, {"memory_id": memory_id, "tenant_id": tenant_id}).mappings().first()
        if row is None:
            return None
        return _row_to_memory(row)

    def find_by_content_hash(
        self,
        content_hash: str,
        tenant_id: str,
        conn: Optional[Connection] = None,
    ) -> Optional[Memory]:
        tenant_value = validate_tenant_id(tenant_id)
        if not isinstance(content_hash, str) or not content_hash.strip():
            return None

        def run(active: Connection) -> Optional[Memory]:
            memory_id = active.execute(
                _EXISTING_ID_SQL,
                {"tenant_id": tenant_value, "content_hash": content_hash},
            ).scalar()
            if memory_id is None:
                return None
            return self._load(active, str(memory_id), tenant_value)

        return self._read(tenant_value, conn, run)

    def find_similar(
        self,
        embedding: Embedding,
        threshold: float,
        tenant_id: str,
        limit: int = 10,
        metric: SimilarityMetric | str = SimilarityMetric.COSINE,
        conn: Optional[Connection] = None,
    ) -> list[SimilarResult]:
        """Nearest stored memories by ``metric``, closest first.

        ``threshold`` is expressed as a similarity: cosine keeps
        ``distance <= 1 - threshold``, euclidean keeps ``distance <= threshold``
        and dot keeps ``distance <= -threshold``.
        """
        tenant_value = validate_tenant_id(tenant_id)
        if not isinstance(embedding, Embedding):
            raise ValidationIssue("embedding must be an Embedding", field="embedding", error_type="invalid_type")
        validate_threshold(threshold)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        metric_value = _parse_metric(metric)
        statement = _similarity_sql(metric_value, embedding.dimensions)

        def run(active: Connection) -> list[SimilarResult]:
            rows = active.execute(
                statement,
                {
                    "tenant_id": tenant_value,
                    "dimensions": embedding.dimensions,
                    "query_vector": list(embedding.vector),
                    "max_distance": max_distance_for(metric_value, threshold),
                    "limit": limit,
                },
            ).mappings().all()

            results = []
            for row in rows:
                memory = self._load(active, str(row["id"]), tenant_value)
                if memory is None:
                    continue
                distance = float(row["distance"])
                results.append(
                    SimilarResult(
                        memory=memory,
                        distance=distance,
                        similarity=similarity_from_distance(metric_value, distance),
                    )
                )
            return results

        results = self._read(tenant_value, conn, run)
        logger.debug(f"find_similar({metric_value.value}) returned {len(results)} results")
        return results

    def search(
        self,
        query: str,
        tenant_id: str,
        limit: int = 50,
        conn: Optional[Connection] = None,
    ) -> list[Memory]:
        """Full-text search over memory content, best match first."""
        tenant_value = validate_tenant_id(tenant_id)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        if not isinstance(query, str) or not query.strip():
            return []
        if len(query) > config.MAX_QUERY_LENGTH:
            raise ValidationIssue(
                f"query exceeds max length {config.MAX_QUERY_LENGTH}",
                field="query",
                error_type="max_length",
            )

        def run(active: Connection) -> list[Memory]:
            rows = active.execute(
                _SEARCH_SQL,
                {"tenant_id": tenant_value, "query": query.strip(), "limit": limit},
            ).mappings().all()
            return self._load_many(active, [str(row["id"]) for row in rows], tenant_value)

        return self._read(tenant_value, conn, run)

    def find_all(
        self,
        tenant_id: str,
        limit: int = 100,
        offset: int = 0,
        conn: Optional[Connection] = None,
    ) -> list[Memory]:
        """Page through a tenant's memories, newest first."""
        tenant_value = validate_tenant_id(tenant_id)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset)

        def run(active: Connection) -> list[Memory]:
            ids = active.execute(
                _FIND_ALL_SQL,
                {"tenant_id": tenant_value, "limit": limit, "offset": offset},
            ).scalars().all()
            return self._load_many(active, [str(memory_id) for memory_id in ids], tenant_value)

        return self._read(tenant_value, conn, run)

    def _load_many(self, conn: Connection, memory_ids: list[str], tenant_id: str) -> list[Memory]:
        memories = []
        for memory_id in memory_ids:
            memory = self._load(conn, memory_id, tenant_id)
            if memory is not None:
                memories.append(memory)
        return memories
