from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from ..database import Base


class CacheEntry(Base):
    """
    Key-addressed cache of search results, query embeddings and status summaries.
    Key: see services.cache.CacheKeys (e.g. vector:search:<md5>)
    Rows past expires_at are treated as misses and removed lazily.
    """
    __tablename__ = "cache_entries"

    id = Column(Integer, primary_key=True, index=True)
    cache_key = Column(String(255), unique=True, nullable=False, index=True)
    value_json = Column(Text, nullable=False)
    # Set for per-member entries so they can be dropped on reindex.
    entity_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<CacheEntry(key={self.cache_key[:32]}..., entity={self.entity_id})>"
