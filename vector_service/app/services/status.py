import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from .cache import TTL, CacheKeys, VectorCache
from .vector_store import VectorStore


logger = logging.getLogger(__name__)

HEALTHY = "HEALTHY"
DEGRADED = "DEGRADED"


class StatusService:
    """Index summary for GET /status, cached for a minute."""

    def __init__(self, *, store: VectorStore, cache: VectorCache):
        self.store = store
        self.cache = cache

    def status(self) -> dict[str, Any]:
        key = CacheKeys.status_key()
        cached = self.cache.get(key)
        if isinstance(cached, dict) and "status" in cached:
            return cached

        summary: dict[str, Any] = {
            "totalEmbeddings": 0,
            "activeEmbeddings": 0,
            "embeddingDimension": self.store.dimension,
            "model": self.store.model_version,
            "indexType": "FLAT",
            "status": DEGRADED,
        }
        if not self.store.ping():
            return summary

        try:
            summary["totalEmbeddings"] = self.store.count_embeddings()
            summary["activeEmbeddings"] = self.store.count_active_embeddings()
            summary["indexType"] = self.store.index_type()
        except SQLAlchemyError as e:
            logger.warning("Status counts unavailable: %s", e)
            return summary

        summary["status"] = HEALTHY
        self.cache.put(key, summary, TTL.STATUS)
        return summary
