"""
Search Orchestrator

Per request:

    START -> CACHE_CHECK -> HIT  -> RETURN
                         -> MISS -> EMBED -> QUERY -> CACHE_WRITE -> RETURN

The cache lookup and the query embedding start together. On a hit the
embedding task is left running in the background and its result dropped.
minSimilarity is applied after the cache / store step, so cached result sets
are always unfiltered.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any

from ..config import (
    HYBRID_TEXT_WEIGHT,
    HYBRID_VECTOR_WEIGHT,
    SEARCH_DEFAULT_LIMIT,
    SEARCH_MAX_LIMIT,
    SEARCH_MAX_QUERY_CHARS,
    SEARCH_RETRY_BACKOFF_S,
    SEARCH_TIMEOUT_S,
)
from ..utils.error_handlers import AppError, OperationTimeout, UnexpectedError
from ..utils.results import Err, Ok, Result
from ..utils.validation import validate_query_text
from .cache import TTL, CacheKeys, VectorCache
from .embedding_client import TASK_RETRIEVAL_QUERY, EmbeddingProvider, EmbeddingVector
from .metrics import MetricsCollector
from .vector_store import SearchResult, VectorStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchQuery:
    text: str
    limit: int = SEARCH_DEFAULT_LIMIT
    active_only: bool = True
    min_similarity: float = 0.0
    hybrid: bool = False
    vector_weight: float = HYBRID_VECTOR_WEIGHT
    text_weight: float = HYBRID_TEXT_WEIGHT

    def __post_init__(self) -> None:
        # limit is always within [1, SEARCH_MAX_LIMIT], however the query was built.
        v = _finite_number(self.limit)
        limit = SEARCH_DEFAULT_LIMIT if v is None else int(v)
        object.__setattr__(self, "limit", max(1, min(limit, SEARCH_MAX_LIMIT)))

    def cache_key(self) -> str:
        if self.hybrid:
            return CacheKeys.search_key(
                self.text,
                self.limit,
                self.active_only,
                hybrid=True,
                vector_weight=self.vector_weight,
                text_weight=self.text_weight,
            )
        return CacheKeys.search_key(self.text, self.limit, self.active_only)


def _finite_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def _unit_interval(value: Any) -> float | None:
    v = _finite_number(value)
    if v is None or v < 0.0 or v > 1.0:
        return None
    return v


class SearchQueryBuilder:
    """
    Fluent construction of an immutable SearchQuery.

        SearchQueryBuilder("cheerful singer").limit(5).min_similarity(0.3).build()

    Unusable optional values (non-numeric, NaN, out of range) are ignored and
    the default kept. A numeric limit outside [1, max] is clamped.
    """

    def __init__(self, text: str = "", *, max_limit: int = SEARCH_MAX_LIMIT, max_query_chars: int = SEARCH_MAX_QUERY_CHARS):
        self._text = text
        self._limit = SEARCH_DEFAULT_LIMIT
        self._active_only = True
        self._min_similarity = 0.0
        self._hybrid = False
        self._vector_weight = HYBRID_VECTOR_WEIGHT
        self._text_weight = HYBRID_TEXT_WEIGHT
        self._max_limit = max_limit
        self._max_query_chars = max_query_chars

    def text(self, value: str) -> "SearchQueryBuilder":
        self._text = value
        return self

    def limit(self, value: Any) -> "SearchQueryBuilder":
        v = _finite_number(value)
        if v is None:
            return self
        self._limit = max(1, min(int(v), self._max_limit))
        return self

    def active_only(self, value: bool = True) -> "SearchQueryBuilder":
        if isinstance(value, bool):
            self._active_only = value
        return self

    def min_similarity(self, value: Any) -> "SearchQueryBuilder":
        v = _unit_interval(value)
        if v is not None:
            self._min_similarity = v
        return self

    def hybrid(self, enabled: bool = True, *, vector_weight: Any = None, text_weight: Any = None) -> "SearchQueryBuilder":
        self._hybrid = bool(enabled)
        vw = _unit_interval(vector_weight)
        if vw is not None:
            self._vector_weight = vw
        tw = _unit_interval(text_weight)
        if tw is not None:
            self._text_weight = tw
        return self

    def build(self) -> SearchQuery:
        text = validate_query_text(self._text, self._max_query_chars)
        return SearchQuery(
            text=text,
            limit=self._limit,
            active_only=self._active_only,
            min_similarity=self._min_similarity,
            hybrid=self._hybrid,
            vector_weight=self._vector_weight,
            text_weight=self._text_weight,
        )


@dataclass
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)
    query_time_ms: int = 0
    total_results: int = 0
    cached: bool = False
    error: AppError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "queryTimeMs": self.query_time_ms,
            "totalResults": self.total_results,
            "cached": self.cached,
        }


def _apply_min_similarity(results: list[SearchResult], min_similarity: float, limit: int) -> list[SearchResult]:
    kept = [r for r in results if r.score >= min_similarity][:limit]
    for i, r in enumerate(kept, start=1):
        r.rank = i
    return kept


class SearchOrchestrator:
    def __init__(
        self,
        *,
        provider: EmbeddingProvider,
        store: VectorStore,
        cache: VectorCache,
        metrics: MetricsCollector,
        timeout_s: float = SEARCH_TIMEOUT_S,
        retry_backoff_s: float = SEARCH_RETRY_BACKOFF_S,
    ):
        self.provider = provider
        self.store = store
        self.cache = cache
        self.metrics = metrics
        self.timeout_s = timeout_s
        self.retry_backoff_s = retry_backoff_s
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------ background

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background query embedding failed: %s", exc)

    @property
    def pending_background(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for fire-and-forget embedding tasks (shutdown / tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------ steps

    async def _embed_query(self, text: str) -> Result[EmbeddingVector]:
        key = CacheKeys.embedding_key(text, self.provider.model)
        cached = await asyncio.to_thread(self.cache.get, key)
        if isinstance(cached, list) and len(cached) == self.store.dimension:
            self.metrics.increment("embedding.cache_hit")
            return Ok(
                EmbeddingVector(
                    values=[float(x) for x in cached],
                    model=self.provider.model,
                    task_type=TASK_RETRIEVAL_QUERY,
                )
            )

        self.metrics.increment("embedding.requests")
        result = await self.provider.embed(text, TASK_RETRIEVAL_QUERY)
        if isinstance(result, Err):
            self.metrics.increment("embedding.failed")
            return result
        # Repaired vectors are a provider anomaly; do not pin them for a day.
        if not result.value.repaired:
            await asyncio.to_thread(self.cache.put, key, result.value.values, TTL.EMBEDDING)
        return result

    async def _query_store(self, query: SearchQuery, vector: list[float]) -> list[SearchResult]:
        if query.hybrid:
            return await asyncio.to_thread(
                self.store.hybrid_query,
                vector,
                query.text,
                query.vector_weight,
                query.text_weight,
                query.limit,
                query.active_only,
            )
        return await asyncio.to_thread(self.store.query, vector, query.limit, query.active_only)

    async def _query_with_retry(self, query: SearchQuery, vector: list[float]) -> list[SearchResult]:
        for attempt in range(2):
            try:
                return await self._query_store(query, vector)
            except AppError as e:
                if attempt == 0 and e.retryable:
                    self.metrics.increment("search.store_retry")
                    logger.warning("Store query failed (%s), retrying once: %s", e.code, e.message)
                    await asyncio.sleep(self.retry_backoff_s)
                    continue
                raise
        raise UnexpectedError("Store query retry loop exited")

    async def _execute(self, query: SearchQuery) -> tuple[list[SearchResult], bool]:
        key = query.cache_key()
        cache_task = asyncio.create_task(asyncio.to_thread(self.cache.get, key))
        embed_task = asyncio.create_task(self._embed_query(query.text))
        self._track(embed_task)

        cached = await cache_task

        if isinstance(cached, list):
            try:
                hit = [SearchResult.from_dict(item) for item in cached]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding unreadable cached result set %s: %s", key[:40], e)
            else:
                self.metrics.increment("search.cache_hit")
                logger.debug("Search cache hit for %s", key[:40])
                return hit, True

        self.metrics.increment("search.cache_miss")
        # Shielded so a request timeout does not cancel an already-dispatched provider call.
        embedded = await asyncio.shield(embed_task)
        if isinstance(embedded, Err):
            raise embedded.error

        results = await self._query_with_retry(query, embedded.value.values)

        stored = await asyncio.to_thread(
            self.cache.put,
            key,
            [r.to_dict() for r in results],
            TTL.SEARCH_RESULT,
        )
        if not stored and self.cache.enabled:
            logger.warning("Search results computed but not cached for %s", key[:40])
        return results, False

    # ------------------------------------------------------------ entry point

    def _failure(self, error: AppError, start: float) -> SearchResponse:
        elapsed = int((time.perf_counter() - start) * 1000)
        self.metrics.increment("search.failed")
        self.metrics.observe("search.latency", elapsed)
        logger.warning("Search failed (%s, retryable=%s): %s", error.code, error.retryable, error.message)
        return SearchResponse(results=[], query_time_ms=elapsed, total_results=0, cached=False, error=error)

    async def search(self, query: SearchQuery) -> SearchResponse:
        start = time.perf_counter()
        self.metrics.increment("search.requests")

        try:
            results, cached = await asyncio.wait_for(self._execute(query), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            return self._failure(OperationTimeout(f"Search timed out after {self.timeout_s}s"), start)
        except AppError as e:
            return self._failure(e, start)
        except Exception as e:
            logger.exception("Unexpected search error")
            return self._failure(UnexpectedError(f"Unexpected search error: {type(e).__name__}"), start)

        filtered = _apply_min_similarity(results, query.min_similarity, query.limit)
        elapsed = int((time.perf_counter() - start) * 1000)
        self.metrics.observe("search.latency", elapsed)
        logger.info(
            "Search ok: results=%s cached=%s hybrid=%s time_ms=%s",
            len(filtered),
            cached,
            query.hybrid,
            elapsed,
        )
        return SearchResponse(
            results=filtered,
            query_time_ms=elapsed,
            total_results=len(filtered),
            cached=cached,
        )
