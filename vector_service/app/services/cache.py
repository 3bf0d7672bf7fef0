"""
Vector Cache Service

Key-addressed TTL cache for search results, query embeddings, per-member index
status and status summaries, stored in the `cache_entries` table.

Every public method is soft: database or serialization failures are logged as
warnings and degrade to a miss / no-op. Callers never see a cache exception.
"""

import hashlib
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import (
    CACHE_ENABLED,
    CACHE_TTL_EMBEDDING_S,
    CACHE_TTL_MEMBER_INDEX_S,
    CACHE_TTL_SEARCH_S,
    CACHE_TTL_STATUS_S,
    EMBEDDINGS_MODEL,
)
from ..models.cache_entry import CacheEntry
from ..utils.error_handlers import CacheConnectionError, CacheSerializationError
from .embeddings import normalize_text

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"^[a-zA-Z0-9:._*-]+$")
MAX_KEY_LENGTH = 250


class TTL:
    SEARCH_RESULT = timedelta(seconds=CACHE_TTL_SEARCH_S)
    MEMBER_INDEX = timedelta(seconds=CACHE_TTL_MEMBER_INDEX_S)
    EMBEDDING = timedelta(seconds=CACHE_TTL_EMBEDDING_S)
    STATUS = timedelta(seconds=CACHE_TTL_STATUS_S)


def _md5(s: str) -> str:
    return hashlib.md5(s.encode("utf-8", errors="ignore")).hexdigest()


class CacheKeys:
    PREFIX = "vector"
    SEARCH = "search"
    INDEX = "index"
    MEMBER = "member"

    @classmethod
    def search_key(
        cls,
        query: str,
        limit: int,
        active_only: bool,
        *,
        hybrid: bool = False,
        vector_weight: float | None = None,
        text_weight: float | None = None,
    ) -> str:
        parts = [normalize_text(query).casefold(), str(int(limit)), str(bool(active_only)).lower()]
        if hybrid:
            parts += ["hybrid", f"{vector_weight}", f"{text_weight}"]
        return f"{cls.PREFIX}:{cls.SEARCH}:{_md5(':'.join(parts))}"

    @classmethod
    def embedding_key(cls, text: str, model: str = EMBEDDINGS_MODEL) -> str:
        return f"{cls.PREFIX}:embedding:{model}:{_md5(normalize_text(text).casefold())}"

    @classmethod
    def member_index_key(cls, member_id: int, model: str = EMBEDDINGS_MODEL) -> str:
        return f"{cls.PREFIX}:{cls.INDEX}:{cls.MEMBER}:{int(member_id)}:{model}"

    @classmethod
    def status_key(cls) -> str:
        return f"{cls.PREFIX}:status"

    @classmethod
    def clear_member_pattern(cls, member_id: int) -> str:
        return f"{cls.PREFIX}:*{cls.MEMBER}:{int(member_id)}:*"

    @classmethod
    def clear_search_pattern(cls) -> str:
        return f"{cls.PREFIX}:{cls.SEARCH}:*"

    @staticmethod
    def is_valid_key(key: str) -> bool:
        return bool(key) and len(key) <= MAX_KEY_LENGTH and bool(_SAFE_KEY_RE.match(key))

    @classmethod
    def safe(cls, key: str) -> str:
        """Hash keys that are too long or carry characters unsafe for the backing store."""
        if cls.is_valid_key(key):
            return key
        return f"{cls.PREFIX}:h:{hashlib.sha256((key or '').encode('utf-8', errors='ignore')).hexdigest()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _like_pattern(pattern: str) -> str:
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


class VectorCache:
    """
    Cache-aside store. get() returns None on miss.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        enabled: bool = CACHE_ENABLED,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.enabled = enabled
        self.clock = clock

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        cache_key = CacheKeys.safe(key)
        db: Session = self.session_factory()
        try:
            entry = db.query(CacheEntry).filter(CacheEntry.cache_key == cache_key).first()
            if not entry:
                return None

            if _as_utc(entry.expires_at) <= self.clock():
                logger.debug("Cache expired for key %s...", cache_key[:40])
                db.delete(entry)
                db.commit()
                return None

            try:
                value = json.loads(entry.value_json)
            except (TypeError, ValueError):
                err = CacheSerializationError(f"Cache corruption for key {cache_key}: invalid JSON")
                logger.warning("%s", err.message)
                return None
            logger.debug("Cache HIT: %s", cache_key[:40])
            return value
        except SQLAlchemyError as e:
            db.rollback()
            err = CacheConnectionError(f"Cache retrieval error: {e}")
            logger.warning("%s", err.message)
            return None
        finally:
            db.close()

    def put(self, key: str, value: Any, ttl: timedelta, *, entity_id: int | None = None) -> bool:
        """
        Store (or overwrite) a value. Returns True if cached successfully.
        """
        if not self.enabled:
            return False
        cache_key = CacheKeys.safe(key)
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            err = CacheSerializationError(f"Cache serialization error for key {cache_key}: {e}")
            logger.warning("%s", err.message)
            return False

        expires_at = self.clock() + ttl
        db: Session = self.session_factory()
        try:
            existing = db.query(CacheEntry).filter(CacheEntry.cache_key == cache_key).first()
            if existing:
                existing.value_json = payload
                existing.expires_at = expires_at
                existing.entity_id = entity_id
                db.add(existing)
            else:
                db.add(
                    CacheEntry(
                        cache_key=cache_key,
                        value_json=payload,
                        entity_id=entity_id,
                        expires_at=expires_at,
                    )
                )
            db.commit()
            logger.debug("Cache stored: %s (ttl=%ss)", cache_key[:40], int(ttl.total_seconds()))
            return True
        except SQLAlchemyError as e:
            db.rollback()
            err = CacheConnectionError(f"Cache storage error: {e}")
            logger.warning("%s", err.message)
            return False
        finally:
            db.close()

    def invalidate(self, key_or_pattern: str, *, entity_id: int | None = None) -> int:
        """
        Delete one key, or every key matching a glob pattern ('*' wildcard).
        With entity_id, rows tagged with that member are removed as well.

        Returns:
            Number of cache entries deleted.
        """
        db: Session = self.session_factory()
        try:
            q = db.query(CacheEntry)
            if "*" in key_or_pattern:
                cond = CacheEntry.cache_key.like(_like_pattern(key_or_pattern), escape="\\")
            else:
                cond = CacheEntry.cache_key == CacheKeys.safe(key_or_pattern)
            if entity_id is not None:
                cond = cond | (CacheEntry.entity_id == int(entity_id))
            count = q.filter(cond).delete(synchronize_session=False)
            db.commit()
            if count:
                logger.info("Invalidated %s cache entries for %s", count, key_or_pattern)
            return count
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Cache invalidation error: %s", e)
            return 0
        finally:
            db.close()

    def invalidate_member(self, member_id: int) -> int:
        """
        Drop everything that may reflect a member's old embedding:
        its own entries, every cached result set, and the status summary.
        """
        total = self.invalidate(CacheKeys.clear_member_pattern(member_id), entity_id=member_id)
        total += self.invalidate(CacheKeys.clear_search_pattern())
        total += self.invalidate(CacheKeys.status_key())
        return total

    def purge_expired(self) -> int:
        """
        Clear entries whose TTL has passed.

        Returns:
            Number of entries deleted.
        """
        db: Session = self.session_factory()
        try:
            count = db.query(CacheEntry).filter(CacheEntry.expires_at <= self.clock()).delete(synchronize_session=False)
            db.commit()
            logger.info("Cleared %s expired cache entries", count)
            return count
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Cache cleanup error: %s", e)
            return 0
        finally:
            db.close()
