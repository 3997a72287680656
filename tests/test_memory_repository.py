from datetime import datetime, timezone

import pytest

from fakes import FakeConnection, FakeDatabase, FakeResult
from pond.errors import ValidationIssue
from pond.models import (
    Action,
    Embedding,
    Entity,
    Memory,
    MemoryStatus,
    SimilarityMetric,
    Source,
    SourceType,
    Tag,
)
from pond.services.memory_repository import PostgresMemoryRepository

TENANT = "6f1c2b7e-2d3a-4c8e-9f10-1a2b3c4d5e6f"
OTHER_TENANT = "0d9e8f7a-6b5c-4d3e-8f2a-1b0c9d8e7f6a"
MEMORY_ID = "3b0c6a1e-8d4f-4e2a-9b7c-5d6e7f8a9b0c"
CREATED_AT = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _rich_memory() -> Memory:
    memory = Memory(content="Pond stores memories for agents", created_at=CREATED_AT)
    for raw in ("Python", "Postgres", "Vectors"):
        memory = memory.add_tag(Tag(raw))
    memory = memory.add_entity(Entity("Pond", "project"))
    memory = memory.add_entity(Entity("PostgreSQL", "technology"))
    memory = memory.add_action(Action("Store Memory"))
    memory = memory.with_embedding(Embedding([0.01] * 768, model="nomic-embed-text"))
    return memory.with_source(Source(type=SourceType.EXTERNAL_AGENT, context="Claude session", created_at=CREATED_AT))


def _memory_row(memory_id: str = MEMORY_ID, content: str = "Pond stores memories for agents", **overrides) -> dict:
    row = {
        "id": memory_id,
        "content": content,
        "content_hash": "ignored",
        "status": "STORED",
        "created_at": CREATED_AT,
        "embedding_vector": None,
        "embedding_dimensions": None,
        "embedding_model": None,
        "source_type": None,
        "source_context": None,
        "source_hash": None,
        "source_created_at": None,
        "tags": [],
        "entities": [],
        "actions": [],
    }
    row.update(overrides)
    return row


def _repository(conn: FakeConnection) -> tuple[PostgresMemoryRepository, FakeDatabase]:
    db = FakeDatabase(conn)
    return PostgresMemoryRepository(db), db


# ---------------------------------------------------------------------------
# save
# ---------------------------------------------------------------------------

def test_save_inserts_root_and_batches_children():
    conn = FakeConnection().on("INSERT INTO memories", FakeResult([{"id": MEMORY_ID}]))
    repository, db = _repository(conn)

    result = repository.save(_rich_memory(), TENANT)

    assert result.memory_id == MEMORY_ID
    assert result.created is True
    assert db.transactions == 1

    first_sql, first_params = conn.statements[0]
    assert "pond_set_tenant_context" in first_sql
    assert first_params == {"tenant_id": TENANT}

    root_sql, root_params = conn.sql_matching("INSERT INTO memories")[0]
    assert "ON CONFLICT (tenant_id, content_hash) DO NOTHING" in root_sql
    assert "RETURNING id" in root_sql
    assert root_params["status"] == MemoryStatus.STORED.value
    assert root_params["tenant_id"] == TENANT

    _, embedding_params = conn.sql_matching("INSERT INTO embeddings")[0]
    assert embedding_params["dimensions"] == 768
    assert len(embedding_params["vector"]) == 768

    _, source_params = conn.sql_matching("INSERT INTO sources")[0]
    assert source_params["type"] == "external-agent"
    assert source_params["context"] == "Claude session"

    tag_statements = conn.sql_matching("INSERT INTO tags")
    assert len(tag_statements) == 1
    tag_sql, tag_params = tag_statements[0]
    assert "unnest" in tag_sql
    assert "ON CONFLICT (memory_id, slug) DO NOTHING" in tag_sql
    assert tag_params["slugs"] == ["python", "postgres", "vectors"]

    assert len(conn.sql_matching("INSERT INTO entities")) == 1
    assert conn.sql_matching("INSERT INTO entities")[0][1]["types"] == ["project", "technology"]
    assert conn.sql_matching("INSERT INTO actions")[0][1]["slugs"] == ["store-memory"]


def test_save_without_children_writes_only_root():
    conn = FakeConnection().on("INSERT INTO memories", FakeResult([{"id": MEMORY_ID}]))
    repository, _ = _repository(conn)

    repository.save(Memory(content="bare"), TENANT)

    written = [sql for sql, _ in conn.statements if sql.startswith("INSERT")]
    assert len(written) == 1


def test_duplicate_save_is_a_no_op_returning_existing_id():
    conn = (
        FakeConnection()
        .on("INSERT INTO memories", FakeResult([]))
        .on("SELECT id FROM memories", FakeResult([{"id": MEMORY_ID}]))
    )
    repository, _ = _repository(conn)

    result = repository.save(_rich_memory(), TENANT)

    assert result.created is False
    assert result.memory_id == MEMORY_ID
    assert conn.sql_matching("INSERT INTO tags") == []
    assert conn.sql_matching("INSERT INTO embeddings") == []
    assert conn.sql_matching("INSERT INTO sources") == []


def test_save_joins_callers_open_transaction():
    conn = FakeConnection(in_transaction=True).on("INSERT INTO memories", FakeResult([{"id": MEMORY_ID}]))
    repository, db = _repository(conn)

    repository.save(Memory(content="inside unit of work"), TENANT, conn=conn)

    assert conn.begin_calls == 0
    assert conn.commits == 0
    assert db.transactions == 0


def test_save_opens_transaction_on_idle_caller_connection():
    conn = FakeConnection().on("INSERT INTO memories", FakeResult([{"id": MEMORY_ID}]))
    repository, db = _repository(conn)

    repository.save(Memory(content="own transaction"), TENANT, conn=conn)

    assert conn.begin_calls == 1
    assert conn.commits == 1
    assert db.transactions == 0


def test_failed_child_insert_rolls_back_whole_save():
    def explode(params):
        raise RuntimeError("tags insert failed")

    conn = (
        FakeConnection()
        .on("INSERT INTO memories", FakeResult([{"id": MEMORY_ID}]))
        .on("INSERT INTO tags", explode)
    )
    repository, _ = _repository(conn)

    with pytest.raises(RuntimeError, match="tags insert failed"):
        repository.save(_rich_memory(), TENANT)

    assert conn.rollbacks == 1
    assert conn.commits == 0
    assert conn.sql_matching("INSERT INTO actions") == []


def test_save_rejects_malformed_tenant_before_any_statement():
    conn = FakeConnection()
    repository, _ = _repository(conn)

    with pytest.raises(ValidationIssue):
        repository.save(Memory(content="x"), "tenant-one")
    assert conn.statements == []


# ---------------------------------------------------------------------------
# find_by_id
# ---------------------------------------------------------------------------

def test_find_by_id_rehydrates_full_aggregate_in_one_query():
    row = _memory_row(
        embedding_vector=[0.01] * 768,
        embedding_dimensions=768,
        embedding_model="nomic-embed-text",
        source_type="external-agent",
        source_context="Claude session",
        source_hash="abc",
        source_created_at=CREATED_AT,
        tags=[
            {"raw": "Python", "normalized": "python", "slug": "python"},
            {"raw": "Postgres", "normalized": "postgres", "slug": "postgres"},
            {"raw": "Vectors", "normalized": "vectors", "slug": "vectors"},
        ],
        entities=[{"text": "Pond", "type": "project"}, {"text": "PostgreSQL", "type": "technology"}],
        actions=[{"action": "Store Memory", "slug": "store-memory"}],
    )
    conn = FakeConnection().on("FROM memories m LEFT JOIN embeddings", FakeResult([row]))
    repository, db = _repository(conn)

    memory = repository.find_by_id(MEMORY_ID, TENANT)

    assert memory is not None
    assert memory.id == MEMORY_ID
    assert memory.status == MemoryStatus.STORED
    assert memory.created_at == CREATED_AT
    assert [tag.raw for tag in memory.tags] == ["Python", "Postgres", "Vectors"]
    assert [entity.text for entity in memory.entities] == ["Pond", "PostgreSQL"]
    assert memory.actions[0].slug == "store-memory"
    assert memory.embedding.dimensions == 768
    assert memory.embedding.model == "nomic-embed-text"
    assert memory.source.type is SourceType.EXTERNAL_AGENT
    assert memory.source.created_at == CREATED_AT

    # tenant binding plus exactly one data query
    assert len(conn.statements) == 2
    assert "json_agg" in conn.statements[1][0]
    assert db.connections == 1


def test_find_by_id_preserves_draft_status_and_parses_json_text():
    row = _memory_row(status="DRAFT", tags='[{"raw": "a", "normalized": "a", "slug": "a"}]')
    conn = FakeConnection().on("FROM memories m LEFT JOIN embeddings", FakeResult([row]))
    repository, _ = _repository(conn)

    memory = repository.find_by_id(MEMORY_ID, TENANT)

    assert memory.status == MemoryStatus.DRAFT
    assert [tag.slug for tag in memory.tags] == ["a"]


def test_find_by_id_returns_none_when_missing_or_malformed():
    conn = FakeConnection()
    repository, _ = _repository(conn)

    assert repository.find_by_id(MEMORY_ID, TENANT) is None
    statements_before = len(conn.statements)
    assert repository.find_by_id("not-a-uuid", TENANT) is None
    assert len(conn.statements) == statements_before


def test_other_tenant_never_sees_memory():
    def by_tenant(params):
        if params["tenant_id"] == TENANT:
            return FakeResult([_memory_row()])
        return FakeResult([])

    conn = FakeConnection().on("FROM memories m LEFT JOIN embeddings", by_tenant)
    repository, _ = _repository(conn)

    assert repository.find_by_id(MEMORY_ID, TENANT) is not None
    assert repository.find_by_id(MEMORY_ID, OTHER_TENANT) is None
    bound = [params["tenant_id"] for _, params in conn.sql_matching("pond_set_tenant_context")]
    assert bound == [TENANT, OTHER_TENANT]


def test_find_by_content_hash_loads_matching_memory():
    conn = (
        FakeConnection()
        .on("SELECT id FROM memories", FakeResult([{"id": MEMORY_ID}]))
        .on("FROM memories m LEFT JOIN embeddings", FakeResult([_memory_row()]))
    )
    repository, _ = _repository(conn)

    memory = repository.find_by_content_hash("a" * 64, TENANT)

    assert memory.id == MEMORY_ID
    assert conn.sql_matching("SELECT id FROM memories")[0][1]["content_hash"] == "a" * 64


# ---------------------------------------------------------------------------
# find_similar
# ---------------------------------------------------------------------------

def _similarity_conn(distances: dict[str, float]) -> FakeConnection:
    """Answer similarity queries the way the WHERE clause would, then hydrate."""

    def similar(params):
        rows = [
            {"id": memory_id, "distance": distance}
            for memory_id, distance in sorted(distances.items(), key=lambda item: item[1])
            if distance <= params["max_distance"]
        ]
        return FakeResult(rows[: params["limit"]])

    def load(params):
        return FakeResult([_memory_row(memory_id=params["memory_id"], content=f"memory {params['memory_id'][:4]}")])

    return (
        FakeConnection()
        .on("WITH candidates", similar)
        .on("FROM memories m LEFT JOIN embeddings", load)
    )


@pytest.mark.parametrize(
    "metric, operator, threshold, max_distance",
    [
        (SimilarityMetric.COSINE, "<=>", 0.8, 0.2),
        (SimilarityMetric.EUCLIDEAN, "<->", 1.5, 1.5),
        (SimilarityMetric.DOT, "<#>", 0.3, -0.3),
    ],
)
def test_find_similar_uses_metric_operator_and_threshold(metric, operator, threshold, max_distance):
    conn = _similarity_conn({})
    repository, _ = _repository(conn)
    query = Embedding([0.2] * 384)

    repository.find_similar(query, threshold, TENANT, limit=5, metric=metric.value)

    sql, params = conn.sql_matching("WITH candidates")[0]
    assert operator in sql
    assert "e.dimensions = :dimensions" in sql
    assert "ORDER BY distance ASC" in sql
    assert params["dimensions"] == 384
    assert params["max_distance"] == pytest.approx(max_distance)
    assert params["limit"] == 5
    assert params["tenant_id"] == TENANT


def test_cosine_results_ordered_with_similarity_in_range():
    ids = {
        "11111111-1111-4111-8111-111111111111": 0.05,
        "22222222-2222-4222-8222-222222222222": 0.3,
        "33333333-3333-4333-8333-333333333333": 0.15,
    }
    repository, _ = _repository(_similarity_conn(ids))

    results = repository.find_similar(Embedding([0.2] * 768), 0.5, TENANT)

    distances = [result.distance for result in results]
    assert distances == sorted(distances) == [0.05, 0.15, 0.3]
    assert all(-1.0 <= result.similarity <= 1.0 for result in results)
    assert results[0].similarity == pytest.approx(0.95)
    assert results[0].memory.id == "11111111-1111-4111-8111-111111111111"


def test_cosine_threshold_excludes_weaker_match():
    # cosine similarity 0.5 means distance 0.5; threshold 0.8 allows at most 0.2
    repository, _ = _repository(_similarity_conn({MEMORY_ID: 0.5}))

    assert repository.find_similar(Embedding([0.2] * 768), 0.8, TENANT) == []


def test_euclidean_and_dot_similarity_conversion():
    repository, _ = _repository(_similarity_conn({MEMORY_ID: 1.0}))
    euclidean = repository.find_similar(Embedding([0.2] * 128), 2.0, TENANT, metric="euclidean")
    assert euclidean[0].similarity == pytest.approx(0.5)

    repository, _ = _repository(_similarity_conn({MEMORY_ID: -0.9}))
    dot = repository.find_similar(Embedding([0.2] * 128), 0.5, TENANT, metric="dot")
    assert dot[0].similarity == pytest.approx(0.9)


def test_indexed_cosine_query_matches_partial_index_expression():
    conn = _similarity_conn({MEMORY_ID: 0.1})
    repository, _ = _repository(conn)

    results = repository.find_similar(Embedding([0.2] * 1536), 0.5, TENANT, limit=3)

    sql, params = conn.sql_matching("WITH candidates")[0]
    assert "(e.vector::vector(1536)) <=> CAST(:query_vector AS vector(1536))" in sql
    assert "e.dimensions = 1536" in sql
    assert "MATERIALIZED" not in sql
    assert params["limit"] == 3
    assert [result.memory.id for result in results] == [MEMORY_ID]


@pytest.mark.parametrize(
    "metric, dimensions",
    [(SimilarityMetric.COSINE, 384), (SimilarityMetric.EUCLIDEAN, 768), (SimilarityMetric.DOT, 1536)],
)
def test_unindexed_queries_filter_dimensions_before_distance(metric, dimensions):
    conn = _similarity_conn({})
    repository, _ = _repository(conn)

    repository.find_similar(Embedding([0.2] * dimensions), 0.5, TENANT, metric=metric)

    sql, _ = conn.sql_matching("WITH candidates")[0]
    assert "AS MATERIALIZED" in sql
    assert "::vector(" not in sql


def test_find_similar_validates_inputs():
    repository, _ = _repository(FakeConnection())
    query = Embedding([0.2] * 128)

    with pytest.raises(ValidationIssue):
        repository.find_similar(query, 0.5, TENANT, metric="manhattan")
    with pytest.raises(ValidationIssue):
        repository.find_similar(query, 0.5, TENANT, limit=0)
    with pytest.raises(ValidationIssue):
        repository.find_similar([0.2] * 128, 0.5, TENANT)
    with pytest.raises(ValidationIssue):
        repository.find_similar(query, float("nan"), TENANT)


# ---------------------------------------------------------------------------
# search / find_all / delete
# ---------------------------------------------------------------------------

def test_search_ranks_full_text_matches():
    conn = (
        FakeConnection()
        .on("plainto_tsquery", FakeResult([{"id": MEMORY_ID, "rank": 0.7}]))
        .on("FROM memories m LEFT JOIN embeddings", FakeResult([_memory_row()]))
    )
    repository, _ = _repository(conn)

    results = repository.search("  memories for agents ", TENANT, limit=20)

    assert [memory.id for memory in results] == [MEMORY_ID]
    sql, params = conn.sql_matching("plainto_tsquery")[0]
    assert "ts_rank" in sql
    assert "ORDER BY rank DESC" in sql
    assert params["query"] == "memories for agents"
    assert params["limit"] == 20


def test_blank_search_returns_nothing_without_querying():
    conn = FakeConnection()
    repository, _ = _repository(conn)

    assert repository.search("   ", TENANT) == []
    assert conn.statements == []


def test_find_all_pages_newest_first():
    conn = (
        FakeConnection()
        .on("LIMIT :limit OFFSET :offset", FakeResult([{"id": MEMORY_ID}]))
        .on("FROM memories m LEFT JOIN embeddings", FakeResult([_memory_row()]))
    )
    repository, _ = _repository(conn)

    memories = repository.find_all(TENANT, limit=10, offset=20)

    assert len(memories) == 1
    sql, params = conn.sql_matching("OFFSET")[0]
    assert "ORDER BY m.created_at DESC" in sql
    assert params == {"tenant_id": TENANT, "limit": 10, "offset": 20}

    with pytest.raises(ValidationIssue):
        repository.find_all(TENANT, offset=-1)
    with pytest.raises(ValidationIssue):
        repository.find_all(TENANT, limit=100000)


def test_delete_reports_whether_a_row_was_removed():
    conn = FakeConnection().on("DELETE FROM memories", FakeResult(rowcount=1))
    repository, db = _repository(conn)
    assert repository.delete(MEMORY_ID, TENANT) is True
    assert db.transactions == 1

    conn = FakeConnection().on("DELETE FROM memories", FakeResult(rowcount=0))
    repository, _ = _repository(conn)
    assert repository.delete(MEMORY_ID, OTHER_TENANT) is False
    assert repository.delete("nope", TENANT) is False
