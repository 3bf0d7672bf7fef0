"""
Service wiring.

Everything stateful (cache, metrics, dedup set, http client) lives on one
ServiceContainer created per app and stored on `app.state.container`.
Routers pull services out of it through the get_* dependencies below.
"""
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from ..services.cache import VectorCache
from ..services.embedding_client import EmbeddingProvider
from ..services.indexing import IndexEventPublisher, IndexingService
from ..services.members import MemberReader
from ..services.metrics import MetricsCollector
from ..services.reindex_consumer import DeadLetterSink, RecentEventIds, ReindexEventConsumer
from ..services.search import SearchOrchestrator
from ..services.status import StatusService
from ..services.vector_store import VectorStore


@dataclass
class ServiceContainer:
    session_factory: sessionmaker
    provider: EmbeddingProvider
    store: VectorStore
    cache: VectorCache
    members: MemberReader
    metrics: MetricsCollector
    indexing: IndexingService
    search: SearchOrchestrator
    status: StatusService
    consumer: ReindexEventConsumer


def build_container(
    session_factory: sessionmaker | None = None,
    *,
    provider: EmbeddingProvider | None = None,
    cache: VectorCache | None = None,
    store: VectorStore | None = None,
    metrics: MetricsCollector | None = None,
    dead_letter: DeadLetterSink | None = None,
    dedup: RecentEventIds | None = None,
    publisher: IndexEventPublisher | None = None,
) -> ServiceContainer:
    if session_factory is None:
        from ..database import SessionLocal

        session_factory = SessionLocal

    provider = provider or EmbeddingProvider()
    metrics = metrics or MetricsCollector()
    cache = cache or VectorCache(session_factory)
    store = store or VectorStore(session_factory, model_version=provider.model, dimension=provider.dimension)
    members = MemberReader(session_factory)

    indexing = IndexingService(
        provider=provider, store=store, cache=cache, members=members, metrics=metrics, publisher=publisher
    )
    search = SearchOrchestrator(provider=provider, store=store, cache=cache, metrics=metrics)
    consumer = ReindexEventConsumer(indexing, metrics=metrics, dedup=dedup, dead_letter=dead_letter)

    return ServiceContainer(
        session_factory=session_factory,
        provider=provider,
        store=store,
        cache=cache,
        members=members,
        metrics=metrics,
        indexing=indexing,
        search=search,
        status=StatusService(store=store, cache=cache),
        consumer=consumer,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_search_service(request: Request) -> SearchOrchestrator:
    return get_container(request).search


def get_indexing_service(request: Request) -> IndexingService:
    return get_container(request).indexing


def get_status_service(request: Request) -> StatusService:
    return get_container(request).status


def get_consumer(request: Request) -> ReindexEventConsumer:
    return get_container(request).consumer


def get_metrics(request: Request) -> MetricsCollector:
    return get_container(request).metrics
