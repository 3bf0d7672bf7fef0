"""
Reindex Event Consumer

Keeps the vector index in step with member changes published upstream
(routing keys entity.created / entity.updated / entity.deleted).

Delivery is at-least-once:
  - handlers are idempotent (upsert replaces, delete of a missing row is a no-op)
  - recently processed and in-flight eventIds are remembered and duplicates
    short-circuit before any provider call
  - an eventId is remembered only after it was processed successfully

Transport-agnostic: events arrive through handle_message() (broker adapters,
POST /events) or through the consume() worker draining an asyncio.Queue.
"""

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from ..config import EVENT_DEDUP_MAX_SIZE, EVENT_DEDUP_TTL_S, REINDEX_BACKOFF_S, REINDEX_MAX_RETRIES
from ..utils.error_handlers import AppError, InvalidEntityId, ValidationError, get_error_message
from ..utils.validation import validate_entity_id
from .indexing import IndexingService, IndexOutcome
from .metrics import MetricsCollector


logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DELETED = "deleted"
EVENT_TYPES = (EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED)

# Successful outcomes reuse IndexOutcome.status lowercased: indexed, reindexed, exists, deleted.
OUTCOME_SKIPPED = "skipped"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"

# Member fields whose change alters the searchable text or the active filter.
REINDEX_FIELDS = frozenset(
    {
        "name",
        "nameEn",
        "nameJa",
        "nameJp",
        "description",
        "tags",
        "traits",
        "personalityTraits",
        "personalitySummary",
        "nicknames",
        "colors",
        "isActive",
    }
)


def normalize_field_name(name: Any) -> str:
    return str(name or "").strip().lower().replace("_", "").replace("-", "")


_REINDEX_KEYS = frozenset(normalize_field_name(f) for f in REINDEX_FIELDS)


def requires_reindex(changed_fields) -> bool:
    return any(normalize_field_name(f) in _REINDEX_KEYS for f in changed_fields or ())


def normalize_event_type(value: Any) -> str | None:
    """MEMBER_UPDATED, entity.updated, Updated -> updated."""
    v = str(value or "").strip().lower()
    if not v:
        return None
    for t in EVENT_TYPES:
        if v == t or v.endswith(f".{t}") or v.endswith(f"_{t}"):
            return t
    return None


@dataclass(frozen=True)
class ReindexEvent:
    entity_id: int
    event_type: str
    changed_fields: frozenset = frozenset()
    event_id: str | None = None
    timestamp: str | None = None
    source: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], routing_key: str | None = None) -> "ReindexEvent":
        if not isinstance(payload, dict):
            raise ValidationError(get_error_message("invalid_event"), details={"reason": "payload must be an object"})

        raw_id = payload.get("entityId", payload.get("memberId", payload.get("member_id")))
        try:
            entity_id = validate_entity_id(raw_id)
        except InvalidEntityId:
            raise ValidationError(
                get_error_message("invalid_event"),
                details={"reason": "entityId must be a positive integer"},
            ) from None

        event_type = normalize_event_type(payload.get("eventType", payload.get("event_type")))
        if event_type is None:
            event_type = normalize_event_type(routing_key)
        if event_type is None:
            raise ValidationError(
                get_error_message("invalid_event"),
                details={"reason": "eventType missing or unknown", "routingKey": routing_key},
            )

        changed = payload.get("changedFields", payload.get("changed_fields")) or []
        if isinstance(changed, str):
            changed = [changed]
        if not isinstance(changed, (list, tuple, set)):
            raise ValidationError(get_error_message("invalid_event"), details={"reason": "changedFields must be a list"})

        event_id = payload.get("eventId", payload.get("event_id"))
        return cls(
            entity_id=entity_id,
            event_type=event_type,
            changed_fields=frozenset(str(f) for f in changed if f is not None),
            event_id=str(event_id) if event_id not in (None, "") else None,
            timestamp=payload.get("timestamp"),
            source=payload.get("source"),
            raw=dict(payload),
        )


class RecentEventIds:
    """
    Bounded, TTL-limited set of processed eventIds.
    Oldest entries are evicted first when full.

    Ids currently being processed are tracked separately: try_claim() lets only
    one of several concurrent deliveries through, release() frees the id again
    when processing did not complete.
    """

    def __init__(
        self,
        ttl_s: float = EVENT_DEDUP_TTL_S,
        max_size: int = EVENT_DEDUP_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_s = float(ttl_s)
        self.max_size = max(1, int(max_size))
        self.clock = clock
        self._lock = threading.Lock()
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._in_flight: set[str] = set()

    def _evict(self, now: float) -> None:
        while self._seen:
            oldest_id, ts = next(iter(self._seen.items()))
            if now - ts < self.ttl_s and len(self._seen) <= self.max_size:
                break
            self._seen.pop(oldest_id, None)

    def seen(self, event_id: str) -> bool:
        now = self.clock()
        with self._lock:
            self._evict(now)
            return event_id in self._seen

    def add(self, event_id: str) -> None:
        now = self.clock()
        with self._lock:
            self._in_flight.discard(event_id)
            self._seen.pop(event_id, None)
            self._seen[event_id] = now
            self._evict(now)

    def try_claim(self, event_id: str) -> bool:
        now = self.clock()
        with self._lock:
            self._evict(now)
            if event_id in self._seen or event_id in self._in_flight:
                return False
            self._in_flight.add(event_id)
            return True

    def release(self, event_id: str) -> None:
        with self._lock:
            self._in_flight.discard(event_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class DeadLetterSink(Protocol):
    async def publish(self, payload: Any, error: AppError, attempts: int) -> None:
        ...


class LoggingDeadLetterSink:
    """Default sink: the failed event is logged and dropped."""

    async def publish(self, payload: Any, error: AppError, attempts: int) -> None:
        logger.error(
            "Dead-lettered reindex event after %s attempt(s) (%s): %s payload=%s",
            attempts,
            error.code,
            error.message,
            str(payload)[:500],
        )


@dataclass
class ConsumeOutcome:
    status: str
    entity_id: int | None = None
    event_id: str | None = None
    event_type: str | None = None
    attempts: int = 0
    error: AppError | None = None

    @property
    def ok(self) -> bool:
        return self.status != OUTCOME_FAILED

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "entityId": self.entity_id,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "attempts": self.attempts,
        }
        if self.error is not None:
            out["error"] = self.error.message
            out["errorCode"] = self.error.code
            out["retryable"] = self.error.retryable
        return out


class ReindexEventConsumer:
    def __init__(
        self,
        indexing: IndexingService,
        *,
        metrics: MetricsCollector,
        dedup: RecentEventIds | None = None,
        dead_letter: DeadLetterSink | None = None,
        max_retries: int = REINDEX_MAX_RETRIES,
        backoff_s: float = REINDEX_BACKOFF_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.indexing = indexing
        self.metrics = metrics
        self.dedup = dedup or RecentEventIds()
        self.dead_letter = dead_letter or LoggingDeadLetterSink()
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = backoff_s
        self.sleep = sleep

    async def _dispatch(self, event: ReindexEvent) -> IndexOutcome:
        if event.event_type == EVENT_DELETED:
            return await self.indexing.remove(event.entity_id)
        if event.event_type == EVENT_CREATED:
            return await self.indexing.index(event.entity_id, force=False)
        return await self.indexing.index(event.entity_id, force=True)

    async def handle(self, event: ReindexEvent) -> ConsumeOutcome:
        base = dict(entity_id=event.entity_id, event_id=event.event_id, event_type=event.event_type)

        if event.event_id and not self.dedup.try_claim(event.event_id):
            self.metrics.increment("events.duplicate")
            logger.info("Duplicate event %s for member=%s ignored", event.event_id, event.entity_id)
            return ConsumeOutcome(status=OUTCOME_DUPLICATE, **base)

        try:
            return await self._process(event, base)
        finally:
            if event.event_id:
                self.dedup.release(event.event_id)

    async def _process(self, event: ReindexEvent, base: dict[str, Any]) -> ConsumeOutcome:
        if event.event_type == EVENT_UPDATED and not requires_reindex(event.changed_fields):
            self.metrics.increment("events.skipped")
            logger.debug(
                "Update of member=%s touches no indexed field (%s); skipping",
                event.entity_id,
                ", ".join(sorted(event.changed_fields)) or "none",
            )
            if event.event_id:
                self.dedup.add(event.event_id)
            return ConsumeOutcome(status=OUTCOME_SKIPPED, **base)

        logger.info("Processing %s event for member=%s (event=%s)", event.event_type, event.entity_id, event.event_id)
        attempts = 0
        outcome: IndexOutcome | None = None
        while attempts < self.max_retries:
            outcome = await self._dispatch(event)
            attempts += 1
            if outcome.ok:
                if event.event_id:
                    self.dedup.add(event.event_id)
                self.metrics.increment("events.processed")
                return ConsumeOutcome(status=outcome.status.lower(), attempts=attempts, **base)
            if not outcome.retryable or attempts >= self.max_retries:
                break
            delay = self.backoff_s * (2 ** (attempts - 1))
            logger.warning(
                "Reindex of member=%s failed (%s), retry %s/%s in %.2fs",
                event.entity_id,
                outcome.error.code if outcome.error else "unknown",
                attempts,
                self.max_retries - 1,
                delay,
            )
            await self.sleep(delay)

        error = outcome.error if outcome is not None and outcome.error is not None else AppError("Reindex failed")
        self.metrics.increment("events.failed")
        await self.dead_letter.publish(event.raw or base, error, attempts)
        return ConsumeOutcome(status=OUTCOME_FAILED, attempts=attempts, error=error, **base)

    async def handle_message(self, payload: Any, routing_key: str | None = None) -> ConsumeOutcome:
        """Entry point for raw transport payloads (JSON text, bytes or an already-decoded dict)."""
        data = payload
        if isinstance(payload, (bytes, bytearray)):
            data = payload.decode("utf-8", errors="replace")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                error = ValidationError(get_error_message("invalid_event"), details={"reason": "payload is not JSON"})
                return await self._reject(payload, error)

        try:
            event = ReindexEvent.from_payload(data, routing_key)
        except ValidationError as e:
            return await self._reject(data, e)
        return await self.handle(event)

    async def _reject(self, payload: Any, error: AppError) -> ConsumeOutcome:
        self.metrics.increment("events.invalid")
        logger.warning("Rejected reindex event: %s %s", error.message, error.details)
        await self.dead_letter.publish(payload, error, 0)
        return ConsumeOutcome(status=OUTCOME_FAILED, error=error)

    async def consume(self, queue: "asyncio.Queue[Any]") -> None:
        """
        Worker loop. Queue items are payloads or (payload, routing_key) tuples.
        A None item stops the worker.
        """
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                if isinstance(item, tuple):
                    payload, routing_key = item
                else:
                    payload, routing_key = item, None
                await self.handle_message(payload, routing_key)
            except Exception:
                logger.exception("Reindex worker failed on queue item")
            finally:
                queue.task_done()
