import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from vector_service.app.services.cache import TTL, CacheKeys
from vector_service.app.services.search import SearchQuery, SearchQueryBuilder
from vector_service.app.utils.error_handlers import (
    EmbeddingProviderUnavailable,
    EmptyQuery,
    OperationTimeout,
    SearchStoreError,
)

from conftest import vec


def _run(orchestrator, query):
    async def go():
        response = await orchestrator.search(query)
        await orchestrator.drain()
        return response

    return asyncio.run(go())


def test_cheerful_singer_returns_two_ordered_results(container, indexed):
    query = SearchQueryBuilder("cheerful singer").limit(2).build()
    response = _run(container.search, query)

    assert response.error is None
    assert response.total_results == 2
    assert [r.entity_id for r in response.results] == [1, 3]
    assert response.results[0].score >= response.results[1].score
    assert all(0.0 <= r.score <= 1.0 for r in response.results)
    assert response.cached is False


def test_second_identical_search_is_served_from_cache(container, indexed, provider):
    query = SearchQueryBuilder("cheerful singer").limit(2).build()
    first = _run(container.search, query)
    second = _run(container.search, query)

    assert second.cached is True
    assert [r.entity_id for r in second.results] == [r.entity_id for r in first.results]
    assert container.metrics.counter("search.cache_hit") == 1
    # Query embedding is cached for a day, so the background embed on the hit path never reaches the provider.
    assert container.search.pending_background == 0
    assert len(provider.calls) == 1


def test_embedding_failure_aborts_with_unavailable(container, indexed, provider):
    provider.error = EmbeddingProviderUnavailable("provider down")
    response = _run(container.search, SearchQueryBuilder("cheerful singer").build())

    assert response.results == []
    assert isinstance(response.error, EmbeddingProviderUnavailable)
    assert response.error.retryable is True
    assert len(provider.calls) == 1


def test_store_failure_is_retried_exactly_once(container, indexed, monkeypatch):
    store = container.store
    real_query = store.query
    calls = []

    def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise SearchStoreError("connection reset")
        return real_query(*args, **kwargs)

    monkeypatch.setattr(store, "query", flaky)
    response = _run(container.search, SearchQueryBuilder("cheerful singer").limit(2).build())

    assert response.error is None
    assert len(calls) == 2
    assert container.metrics.counter("search.store_retry") == 1


def test_persistent_store_failure_surfaces_after_one_retry(container, indexed, monkeypatch):
    calls = []

    def broken(*args, **kwargs):
        calls.append(1)
        raise SearchStoreError("db down")

    monkeypatch.setattr(container.store, "query", broken)
    response = _run(container.search, SearchQueryBuilder("cheerful singer").build())

    assert isinstance(response.error, SearchStoreError)
    assert len(calls) == 2
    assert response.total_results == 0


def test_min_similarity_filters_cached_and_fresh_results(container, indexed):
    loose = SearchQueryBuilder("cheerful singer").limit(3).build()
    strict = SearchQueryBuilder("cheerful singer").limit(3).min_similarity(0.5).build()

    fresh = _run(container.search, strict)
    assert [r.entity_id for r in fresh.results] == [1, 3]

    everything = _run(container.search, loose)
    assert everything.cached is True
    assert [r.entity_id for r in everything.results] == [1, 3, 2]
    assert [r.rank for r in everything.results] == [1, 2, 3]


def test_active_only_false_includes_inactive_members(container, indexed):
    query = SearchQueryBuilder("cheerful singer").limit(2).active_only(False).build()
    response = _run(container.search, query)
    assert [r.entity_id for r in response.results] == [1, 4]


def test_cache_failure_does_not_fail_search(container, indexed, monkeypatch):
    class BrokenSession:
        def query(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("cache db down"))

        def rollback(self):
            pass

        def close(self):
            pass

    monkeypatch.setattr(container.cache, "session_factory", lambda: BrokenSession())
    response = _run(container.search, SearchQueryBuilder("cheerful singer").limit(2).build())

    assert response.error is None
    assert response.cached is False
    assert [r.entity_id for r in response.results] == [1, 3]


def test_timeout_maps_to_operation_timeout(container, indexed, provider):
    async def slow(text, task_type):
        await asyncio.sleep(0.5)
        return [0.0]

    provider._request = slow
    container.search.timeout_s = 0.05
    response = _run(container.search, SearchQueryBuilder("cheerful singer").build())

    assert isinstance(response.error, OperationTimeout)
    assert response.error.retryable is True


def test_hybrid_search_uses_separate_cache_key(container, indexed):
    plain = SearchQueryBuilder("cheerful singer").build()
    hybrid = SearchQueryBuilder("cheerful singer").hybrid(True).build()
    assert plain.cache_key() != hybrid.cache_key()

    response = _run(container.search, hybrid)
    assert response.error is None
    assert all(r.text_score is not None for r in response.results)
    assert container.cache.get(hybrid.cache_key()) is not None


def test_query_embedding_is_cached(container, indexed, provider):
    _run(container.search, SearchQueryBuilder("cheerful singer").limit(1).build())
    key = CacheKeys.embedding_key("cheerful singer", provider.model)
    assert isinstance(container.cache.get(key), list)

    # Different limit -> result-cache miss, embedding-cache hit.
    _run(container.search, SearchQueryBuilder("cheerful singer").limit(2).build())
    assert len(provider.calls) == 1


def test_empty_query_is_rejected_before_search():
    with pytest.raises(EmptyQuery):
        SearchQueryBuilder("   ").build()


@pytest.mark.parametrize("limit,expected", [(0, 1), (-3, 1), (500, 50), ("7", 7), ("lots", 10)])
def test_query_limit_is_clamped_however_it_is_built(limit, expected):
    assert SearchQuery(text="cheerful singer", limit=limit).limit == expected


def test_zero_limit_query_still_returns_the_best_match(container, indexed):
    response = _run(container.search, SearchQuery(text="cheerful singer", limit=0, active_only=False))
    assert response.error is None
    assert response.total_results == 1
    assert response.results[0].entity_id == 1


def test_oversized_limit_query_is_capped(container, indexed, monkeypatch):
    seen = []
    real_query = container.store.query

    def spy(vector, limit, *args, **kwargs):
        seen.append(limit)
        return real_query(vector, limit, *args, **kwargs)

    monkeypatch.setattr(container.store, "query", spy)
    response = _run(container.search, SearchQuery(text="cheerful singer", limit=500))

    assert response.error is None
    assert seen == [50]


def test_cache_hit_does_not_cancel_the_provider_call(container, indexed, provider):
    query = SearchQueryBuilder("cheerful singer").limit(2).build()
    rows = container.store.query(vec(a0=1.0), 2, True)
    container.cache.put(query.cache_key(), [r.to_dict() for r in rows], TTL.SEARCH_RESULT)

    finished = []
    real_request = provider._request

    async def slow(text, task_type):
        await asyncio.sleep(0.2)
        values = await real_request(text, task_type)
        finished.append(text)
        return values

    provider._request = slow

    async def go():
        response = await container.search.search(query)
        pending = container.search.pending_background
        finished_at_return = list(finished)
        await container.search.drain()
        return response, pending, finished_at_return

    response, pending, finished_at_return = asyncio.run(go())

    assert response.cached is True
    assert [r.entity_id for r in response.results] == [1, 3]
    assert pending == 1
    assert finished_at_return == []
    assert finished == ["cheerful singer"]
    assert len(provider.calls) == 1
    assert container.cache.get(CacheKeys.embedding_key("cheerful singer", provider.model)) is not None
