import pytest

from vector_service.app.models.embedding import MemberEmbedding
from vector_service.app.services.vector_store import EmbeddingRecord, SearchResult, VectorStore
from vector_service.app.utils.error_handlers import DimensionMismatch, EntityNotFound, IndexNotReady

from conftest import TEST_MODEL, vec


def _record(entity_id: int, embedding, text="text") -> EmbeddingRecord:
    return EmbeddingRecord(entity_id=entity_id, embedding=embedding, searchable_text=text, model_version=TEST_MODEL)


def test_upsert_twice_keeps_one_row_and_bumps_timestamp(session_factory, members, db_session):
    from datetime import datetime, timedelta, timezone

    times = iter([datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=5)])
    store = VectorStore(session_factory, model_version=TEST_MODEL, clock=lambda: next(times))

    first = store.upsert(_record(1, vec(a0=1.0)))
    ts1 = store.exists(1)
    second = store.upsert(_record(1, vec(a0=1.0)))
    ts2 = store.exists(1)

    assert first.replaced is False
    assert second.replaced is True
    assert ts2 > ts1
    assert db_session.query(MemberEmbedding).filter(MemberEmbedding.member_id == 1).count() == 1
    assert store.get(1).embedding == vec(a0=1.0)


def test_upsert_replaces_content(session_factory, members):
    store = VectorStore(session_factory, model_version=TEST_MODEL)
    store.upsert(_record(1, vec(a0=1.0), text="old"))
    store.upsert(_record(1, vec(a1=1.0), text="new"))

    rec = store.get(1)
    assert rec.embedding == vec(a1=1.0)
    assert rec.searchable_text == "new"


def test_upsert_rejects_wrong_dimension(session_factory, members):
    store = VectorStore(session_factory, model_version=TEST_MODEL)
    with pytest.raises(DimensionMismatch) as exc:
        store.upsert(_record(1, [0.1, 0.2]))
    assert exc.value.retryable is False
    assert store.exists(1) is None


def test_upsert_unknown_member_is_not_found(session_factory, members):
    store = VectorStore(session_factory, model_version=TEST_MODEL)
    with pytest.raises(EntityNotFound):
        store.upsert(_record(999, vec(a0=1.0)))


def test_query_orders_by_score_and_respects_active_only(container, indexed):
    store = container.store

    active = store.query(vec(a0=1.0), limit=10, active_only=True)
    assert [r.entity_id for r in active] == [1, 3, 2]
    assert [r.rank for r in active] == [1, 2, 3]
    assert all(0.0 <= r.score <= 1.0 for r in active)
    assert active[0].score == pytest.approx(1.0)
    assert active[1].score == pytest.approx(0.6)

    everyone = store.query(vec(a0=1.0), limit=2, active_only=False)
    assert [r.entity_id for r in everyone] == [1, 4]


def test_query_ties_break_by_entity_id(session_factory, members):
    store = VectorStore(session_factory, model_version=TEST_MODEL)
    store.upsert(_record(3, vec(a0=1.0)))
    store.upsert(_record(1, vec(a0=1.0)))
    store.upsert(_record(2, vec(a0=1.0)))

    assert [r.entity_id for r in store.query(vec(a0=1.0), limit=3)] == [1, 2, 3]


def test_negative_and_zero_similarity_clamped(session_factory, members):
    store = VectorStore(session_factory, model_version=TEST_MODEL)
    store.upsert(_record(1, vec(a0=-1.0)))
    store.upsert(_record(2, [0.0] * len(vec())))

    results = store.query(vec(a0=1.0), limit=5)
    assert {r.entity_id for r in results} == {1, 2}
    assert all(r.score == 0.0 for r in results)
    # Opposite vector still ranks above the degenerate zero vector.
    assert [r.entity_id for r in results] == [1, 2]


def test_hybrid_with_pure_vector_weights_matches_query(container, indexed):
    store = container.store
    q = vec(a0=0.9, a1=0.3)

    plain = [(r.entity_id, r.rank) for r in store.query(q, limit=4, active_only=False)]
    hybrid = [(r.entity_id, r.rank) for r in store.hybrid_query(q, "calm gamer", 1.0, 0.0, limit=4, active_only=False)]

    assert hybrid == plain


def test_hybrid_text_rank_can_reorder(container, indexed):
    store = container.store
    # Vector alone prefers member 3; the text matches member 2 only.
    q = vec(a0=0.6, a1=0.5)
    results = store.hybrid_query(q, "calm fps gamer", 0.3, 0.7, limit=3, active_only=True)

    assert results[0].entity_id == 2
    assert results[0].text_score > 0
    assert all(0.0 <= r.score <= 1.0 for r in results)
    assert all(r.vector_score is not None for r in results)


def test_exists_and_delete(container, indexed):
    store = container.store
    assert store.exists(1) is not None
    assert store.delete(1) == 1
    assert store.exists(1) is None
    assert store.delete(1) == 0


def test_counts_and_index_type(container, indexed):
    store = container.store
    assert store.count_embeddings() == 4
    assert store.count_active_embeddings() == 3
    assert store.index_type() == "FLAT"
    assert store.ping() is True


def test_search_result_dict_roundtrip_keeps_display_fields():
    r = SearchResult(entity_id=5, display_fields={"name": "X", "branch": "JP"}, score=0.5, rank=1)
    back = SearchResult.from_dict(r.to_dict())
    assert back.entity_id == 5
    assert back.display_fields == {"name": "X", "branch": "JP"}
    assert back.score == 0.5


def test_query_without_index_table_is_not_ready(engine, session_factory):
    MemberEmbedding.__table__.drop(engine)
    store = VectorStore(session_factory, model_version=TEST_MODEL)

    with pytest.raises(IndexNotReady) as exc:
        store.query(vec(a0=1.0), 5)
    assert exc.value.retryable is True
    with pytest.raises(IndexNotReady):
        store.hybrid_query(vec(a0=1.0), "singer", 0.7, 0.3, 5)
