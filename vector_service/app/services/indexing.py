"""
Member indexing: member row -> searchable text -> embedding -> vector store.

index() never raises for domain failures. It returns an IndexOutcome whose
status is INDEXED, REINDEXED, EXISTS or FAILED; FAILED carries the typed error
so callers (REST layer, reindex consumer) can decide on retries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from ..config import SEARCH_RETRY_BACKOFF_S, VECTOR_FACETS_ENABLED
from ..utils.error_handlers import AppError, EntityNotFound, IndexingError, UnexpectedError
from ..utils.results import Err
from ..utils.validation import validate_entity_id
from .cache import TTL, CacheKeys, VectorCache
from .embedding_client import TASK_RETRIEVAL_DOCUMENT, EmbeddingProvider
from .members import MemberReader, build_facet_texts, build_searchable_text
from .metrics import MetricsCollector
from .vector_store import EmbeddingRecord, UpsertResult, VectorStore


logger = logging.getLogger(__name__)

STATUS_INDEXED = "INDEXED"
STATUS_REINDEXED = "REINDEXED"
STATUS_EXISTS = "EXISTS"
STATUS_DELETED = "DELETED"
STATUS_FAILED = "FAILED"

EVENT_EMBEDDING_UPDATED = "embedding.updated"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IndexOutcome:
    entity_id: Any
    status: str
    model: str
    embedding_size: int = 0
    timestamp: datetime | None = None
    error: AppError | None = None
    removed: int = 0

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED

    @property
    def retryable(self) -> bool:
        return bool(self.error is not None and self.error.retryable)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "entityId": self.entity_id,
            "status": self.status,
            "embeddingSize": self.embedding_size,
            "model": self.model,
            "timestamp": (self.timestamp or _utcnow()).isoformat(),
        }
        if self.status == STATUS_DELETED:
            out["removed"] = self.removed
        if self.error is not None:
            out["success"] = False
            out["errorCode"] = self.error.code
            out["retryable"] = self.error.retryable
        return out


@dataclass(frozen=True)
class EmbeddingUpdated:
    """Announced after a member's embedding was written."""
    member_id: int
    embedding_size: int
    model: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "memberId": self.member_id,
            "embeddingSize": self.embedding_size,
            "model": self.model,
            "timestamp": self.timestamp.isoformat(),
        }


class IndexEventPublisher(Protocol):
    async def publish(self, routing_key: str, event: EmbeddingUpdated) -> None:
        ...


class LoggingIndexEventPublisher:
    """Default publisher: the event is only logged."""

    async def publish(self, routing_key: str, event: EmbeddingUpdated) -> None:
        logger.info("Published %s %s", routing_key, event.to_dict())


class IndexingService:
    def __init__(
        self,
        *,
        provider: EmbeddingProvider,
        store: VectorStore,
        cache: VectorCache,
        members: MemberReader,
        metrics: MetricsCollector,
        facets_enabled: bool = VECTOR_FACETS_ENABLED,
        retry_backoff_s: float = SEARCH_RETRY_BACKOFF_S,
        publisher: IndexEventPublisher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.provider = provider
        self.store = store
        self.cache = cache
        self.members = members
        self.metrics = metrics
        self.facets_enabled = facets_enabled
        self.retry_backoff_s = retry_backoff_s
        self.clock = clock
        self.publisher = publisher or LoggingIndexEventPublisher()

    @property
    def model(self) -> str:
        return self.store.model_version

    def _failed(self, entity_id: Any, error: AppError) -> IndexOutcome:
        self.metrics.increment("index.failed")
        logger.warning("Indexing failed for member=%s (%s): %s", entity_id, error.code, error.message)
        return IndexOutcome(
            entity_id=entity_id,
            status=STATUS_FAILED,
            model=self.model,
            timestamp=self.clock(),
            error=error,
        )

    async def index(self, entity_id: Any, *, force: bool = False) -> IndexOutcome:
        start = time.perf_counter()
        try:
            member_id = validate_entity_id(entity_id)
        except IndexingError as e:
            return self._failed(entity_id, e)

        try:
            outcome = await self._index(member_id, force=force)
        except AppError as e:
            return self._failed(member_id, e)
        except Exception as e:
            logger.exception("Unexpected indexing error for member=%s", member_id)
            return self._failed(member_id, UnexpectedError(f"Unexpected indexing error: {type(e).__name__}"))
        finally:
            self.metrics.observe("index.latency", (time.perf_counter() - start) * 1000)

        self.metrics.increment(f"index.{outcome.status.lower()}")
        return outcome

    async def _index(self, member_id: int, *, force: bool) -> IndexOutcome:
        status_key = CacheKeys.member_index_key(member_id, self.model)

        if not force:
            cached = await asyncio.to_thread(self.cache.get, status_key)
            if isinstance(cached, dict) and cached.get("indexed"):
                logger.debug("Member %s already indexed (cached status)", member_id)
                return IndexOutcome(
                    entity_id=member_id,
                    status=STATUS_EXISTS,
                    model=self.model,
                    embedding_size=int(cached.get("embeddingSize") or self.store.dimension),
                    timestamp=self.clock(),
                )

            existing = await asyncio.to_thread(self.store.exists, member_id)
            if existing is not None:
                logger.info("Member %s already has a %s embedding; skipping", member_id, self.model)
                await asyncio.to_thread(
                    self.cache.put,
                    status_key,
                    {"indexed": True, "embeddingSize": self.store.dimension, "updatedAt": existing.isoformat()},
                    TTL.MEMBER_INDEX,
                    entity_id=member_id,
                )
                return IndexOutcome(
                    entity_id=member_id,
                    status=STATUS_EXISTS,
                    model=self.model,
                    embedding_size=self.store.dimension,
                    timestamp=existing,
                )

        member = await asyncio.to_thread(self.members.fetch, member_id)
        if member is None:
            raise EntityNotFound(member_id)

        searchable_text = build_searchable_text(member)
        result = await self.provider.embed(searchable_text, TASK_RETRIEVAL_DOCUMENT)
        if isinstance(result, Err):
            raise result.error
        vector = result.value

        facets: dict[str, list[float]] = {}
        if self.facets_enabled:
            facet_texts = {k: v for k, v in build_facet_texts(member).items() if v}
            facet_results = await self.provider.embed_batch(list(facet_texts.values()), TASK_RETRIEVAL_DOCUMENT)
            for facet, facet_result in zip(facet_texts, facet_results):
                if isinstance(facet_result, Err):
                    logger.warning(
                        "Skipping %s facet for member=%s: %s",
                        facet,
                        member_id,
                        facet_result.error.message,
                    )
                    continue
                facets[facet] = facet_result.value.values

        record = EmbeddingRecord(
            entity_id=member_id,
            embedding=vector.values,
            searchable_text=searchable_text,
            model_version=self.model,
            facets=facets,
        )
        stored = await self._upsert_with_retry(record)

        await asyncio.to_thread(self.cache.invalidate_member, member_id)
        await asyncio.to_thread(
            self.cache.put,
            status_key,
            {"indexed": True, "embeddingSize": vector.dimension, "updatedAt": stored.updated_at.isoformat()},
            TTL.MEMBER_INDEX,
            entity_id=member_id,
        )

        status = STATUS_REINDEXED if stored.replaced else STATUS_INDEXED
        logger.info("Member %s %s (model=%s dim=%s)", member_id, status.lower(), self.model, vector.dimension)
        await self._publish_updated(
            EmbeddingUpdated(
                member_id=member_id,
                embedding_size=vector.dimension,
                model=self.model,
                timestamp=stored.updated_at,
            )
        )
        return IndexOutcome(
            entity_id=member_id,
            status=status,
            model=self.model,
            embedding_size=vector.dimension,
            timestamp=stored.updated_at,
        )

    async def _publish_updated(self, event: EmbeddingUpdated) -> None:
        # The embedding is already stored; a failed notification is not an indexing failure.
        try:
            await self.publisher.publish(EVENT_EMBEDDING_UPDATED, event)
        except Exception as e:
            self.metrics.increment("index.publish_failed")
            logger.warning("Failed to publish %s for member=%s: %s", EVENT_EMBEDDING_UPDATED, event.member_id, e)

    async def _upsert_with_retry(self, record: EmbeddingRecord) -> UpsertResult:
        try:
            return await asyncio.to_thread(self.store.upsert, record)
        except IndexingError as e:
            if not e.retryable:
                raise
            logger.warning("Upsert failed for member=%s, retrying once: %s", record.entity_id, e.message)
        await asyncio.sleep(self.retry_backoff_s)
        return await asyncio.to_thread(self.store.upsert, record)

    async def remove(self, entity_id: Any) -> IndexOutcome:
        """Drop every embedding row of the member and the caches that may reflect it."""
        try:
            member_id = validate_entity_id(entity_id)
            removed = await asyncio.to_thread(self.store.delete, member_id)
        except AppError as e:
            return self._failed(entity_id, e)

        await asyncio.to_thread(self.cache.invalidate_member, member_id)
        self.metrics.increment("index.deleted")
        return IndexOutcome(
            entity_id=member_id,
            status=STATUS_DELETED,
            model=self.model,
            timestamp=self.clock(),
            removed=removed,
        )
