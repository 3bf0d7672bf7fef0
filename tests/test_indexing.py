import asyncio
import logging

from vector_service.app.services.cache import CacheKeys
from vector_service.app.services.embedding_client import TASK_RETRIEVAL_DOCUMENT
from vector_service.app.services.indexing import EVENT_EMBEDDING_UPDATED
from vector_service.app.utils.error_handlers import (
    EmbeddingProviderAPIError,
    EntityNotFound,
    IndexStorageError,
    InvalidEntityId,
)

from conftest import TEST_MODEL, vec


def test_first_index_then_exists_without_provider_call(container, members, provider):
    first = asyncio.run(container.indexing.index(1))
    assert first.status == "INDEXED"
    assert first.embedding_size == container.store.dimension
    assert provider.calls[0][1] == TASK_RETRIEVAL_DOCUMENT

    provider.calls.clear()
    again = asyncio.run(container.indexing.index(1, force=False))
    assert again.status == "EXISTS"
    assert provider.calls == []


def test_exists_is_answered_from_store_when_status_cache_is_cold(container, indexed, provider):
    outcome = asyncio.run(container.indexing.index(2))
    assert outcome.status == "EXISTS"
    assert provider.calls == []
    assert container.cache.get(CacheKeys.member_index_key(2, container.store.model_version))["indexed"] is True


def test_forced_reindex_replaces_row(container, indexed, provider):
    outcome = asyncio.run(container.indexing.index(1, force=True))
    assert outcome.status == "REINDEXED"
    assert len(provider.calls) == 1
    assert container.store.count_embeddings() == 4


def test_searchable_text_is_built_from_member_fields(container, members, provider):
    asyncio.run(container.indexing.index(1))
    text = container.store.get(1).searchable_text
    assert text.startswith("Name: Aki Sora")
    assert "Branch: JP" in text
    assert "Tags: singing, idol" in text
    assert "Traits: cheerful, kind" in text
    assert provider.calls[0][0] == text


def test_empty_provider_vector_is_stored_as_padded_zeros(container, members, provider, caplog):
    provider.raw_override = []
    with caplog.at_level(logging.WARNING):
        outcome = asyncio.run(container.indexing.index(3))

    assert outcome.status == "INDEXED"
    stored = container.store.get(3).embedding
    assert stored == [0.0] * container.store.dimension
    assert len(stored) == 1536
    assert any("embedding dimensions" in r.getMessage() for r in caplog.records)


def test_indexing_invalidates_member_and_search_caches(container, indexed):
    from vector_service.app.services.cache import TTL

    search_key = CacheKeys.search_key("anything", 10, True)
    container.cache.put(search_key, [], TTL.SEARCH_RESULT)
    container.cache.put(CacheKeys.status_key(), {"status": "HEALTHY"}, TTL.STATUS)

    asyncio.run(container.indexing.index(1, force=True))

    assert container.cache.get(search_key) is None
    assert container.cache.get(CacheKeys.status_key()) is None


def test_invalid_and_missing_members_fail_without_provider_call(container, members, provider):
    bad = asyncio.run(container.indexing.index(0))
    assert bad.status == "FAILED"
    assert isinstance(bad.error, InvalidEntityId)
    assert bad.retryable is False

    missing = asyncio.run(container.indexing.index(999))
    assert missing.status == "FAILED"
    assert isinstance(missing.error, EntityNotFound)
    assert provider.calls == []


def test_provider_failure_returns_failed_outcome(container, members, provider):
    provider.error = EmbeddingProviderAPIError("HTTP 500", http_status=500)
    outcome = asyncio.run(container.indexing.index(1))
    assert outcome.status == "FAILED"
    assert outcome.retryable is True
    assert container.store.exists(1) is None
    assert outcome.to_dict()["errorCode"] == "EMBEDDING_API_ERROR"


def test_storage_error_is_retried_once(container, members, monkeypatch):
    real_upsert = container.store.upsert
    calls = []

    def flaky(record):
        calls.append(record.entity_id)
        if len(calls) == 1:
            raise IndexStorageError("deadlock")
        return real_upsert(record)

    monkeypatch.setattr(container.store, "upsert", flaky)
    outcome = asyncio.run(container.indexing.index(2))

    assert outcome.status == "INDEXED"
    assert calls == [2, 2]


def test_facets_are_stored_when_enabled(container, members, provider):
    container.indexing.facets_enabled = True
    provider.responses["aki sora"] = vec(a5=1.0)

    asyncio.run(container.indexing.index(1))

    rec = container.store.get(1)
    assert set(rec.facets) == {"name", "description", "personality"}
    assert rec.facets["name"] == vec(a5=1.0)
    assert len(provider.calls) == 4


def test_remove_deletes_rows_and_caches(container, indexed):
    outcome = asyncio.run(container.indexing.remove(1))
    assert outcome.status == "DELETED"
    assert outcome.removed == 1
    assert container.store.exists(1) is None


class RecordingPublisher:
    def __init__(self, error=None):
        self.events = []
        self.error = error

    async def publish(self, routing_key, event):
        if self.error is not None:
            raise self.error
        self.events.append((routing_key, event))


def test_embedding_updated_is_published_after_store(container, members):
    publisher = RecordingPublisher()
    container.indexing.publisher = publisher

    outcome = asyncio.run(container.indexing.index(2))

    assert outcome.status == "INDEXED"
    assert len(publisher.events) == 1
    routing_key, event = publisher.events[0]
    assert routing_key == EVENT_EMBEDDING_UPDATED
    assert event.to_dict()["memberId"] == 2
    assert event.embedding_size == 1536
    assert event.model == TEST_MODEL
    assert event.to_dict()["timestamp"] == outcome.to_dict()["timestamp"]


def test_nothing_is_published_when_nothing_was_written(container, indexed, provider):
    publisher = RecordingPublisher()
    container.indexing.publisher = publisher

    assert asyncio.run(container.indexing.index(1)).status == "EXISTS"
    provider.error = EmbeddingProviderAPIError("HTTP 500", http_status=500)
    assert asyncio.run(container.indexing.index(2, force=True)).status == "FAILED"

    assert publisher.events == []


def test_publish_failure_does_not_fail_indexing(container, members, caplog):
    container.indexing.publisher = RecordingPublisher(error=ConnectionError("broker down"))

    with caplog.at_level(logging.WARNING):
        outcome = asyncio.run(container.indexing.index(3))

    assert outcome.status == "INDEXED"
    assert container.store.exists(3) is not None
    assert container.metrics.counter("index.publish_failed") == 1
    assert any(EVENT_EMBEDDING_UPDATED in r.getMessage() for r in caplog.records)


def test_facet_texts_are_embedded_as_one_batch(container, members, provider, monkeypatch):
    container.indexing.facets_enabled = True
    batches = []
    real_batch = provider.embed_batch

    async def spy(texts, task_type):
        batches.append((list(texts), task_type))
        return await real_batch(texts, task_type)

    monkeypatch.setattr(provider, "embed_batch", spy)
    asyncio.run(container.indexing.index(2))

    assert len(batches) == 1
    texts, task_type = batches[0]
    assert task_type == TASK_RETRIEVAL_DOCUMENT
    assert len(texts) == 3
    assert set(container.store.get(2).facets) == {"name", "description", "personality"}


def test_failed_facet_is_skipped(container, members, provider):
    container.indexing.facets_enabled = True
    real_request = provider._request

    async def flaky(text, task_type):
        if text.startswith("Calm FPS gamer"):
            raise EmbeddingProviderAPIError("HTTP 500", http_status=500)
        return await real_request(text, task_type)

    provider._request = flaky
    outcome = asyncio.run(container.indexing.index(2))

    assert outcome.status == "INDEXED"
    assert "description" not in container.store.get(2).facets
