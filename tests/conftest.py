import os
import tempfile
from pathlib import Path

# Must be set before anything imports vector_service.app.config / database.
os.environ["DISABLE_DOTENV"] = "1"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{Path(tempfile.mkdtemp(prefix='vector-tests-')) / 'default.sqlite3'}"
# Ensure tests never call the real embedding provider even if the developer machine has keys set.
os.environ["GEMINI_API_KEY"] = ""
os.environ["VECTOR_FACETS_ENABLED"] = "0"
os.environ["CACHE_ENABLED"] = "1"

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from vector_service.app.config import EMBEDDING_DIMENSION
from vector_service.app.services.embedding_client import EmbeddingProvider

TEST_MODEL = "test-embedding-model"


def vec(**weights: float) -> list[float]:
    """
    Sparse helper: vec(a0=1.0, a2=0.5) -> D-length vector with axis 0 = 1.0, axis 2 = 0.5.
    """
    out = [0.0] * EMBEDDING_DIMENSION
    for k, v in weights.items():
        out[int(k.lstrip("a"))] = float(v)
    return out


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Real EmbeddingProvider (truncation, dimension repair, Ok/Err) with the HTTP
    call replaced by a keyword lookup. Every provider call is recorded.
    """

    def __init__(self, responses: dict[str, list[float]] | None = None, **kwargs):
        kwargs.setdefault("api_key", "test-key")
        kwargs.setdefault("model", TEST_MODEL)
        super().__init__(**kwargs)
        self.responses = dict(responses or {})
        self.default = vec(a3=1.0)
        self.calls: list[tuple[str, str]] = []
        self.error = None
        self.raw_override: list[float] | None = None

    async def _request(self, text: str, task_type: str) -> list[float]:
        self.calls.append((text, task_type))
        if self.error is not None:
            raise self.error
        if self.raw_override is not None:
            return list(self.raw_override)
        t = text.lower()
        for key, values in self.responses.items():
            if key in t:
                return list(values)
        return list(self.default)


MEMBERS = [
    dict(
        id=1,
        name_en="Aki Sora",
        name_ja="そら",
        branch="JP",
        generation="0th",
        description="A cheerful singer who loves idol songs",
        tags=["singing", "idol"],
        personality_traits={"cheerful": 0.9, "kind": 0.7},
        nicknames=["Sora-chan"],
        is_active=True,
    ),
    dict(
        id=2,
        name_en="Botan Shishiro",
        branch="JP",
        generation="5th",
        description="Calm FPS gamer",
        tags=["gaming", "fps"],
        personality_traits={"calm": 0.8},
        is_active=True,
    ),
    dict(
        id=3,
        name_en="Calliope Mori",
        branch="EN",
        generation="Myth",
        description="Cheerful rapper and songwriter",
        tags=["rap", "singing"],
        personality_traits={"energy": "high"},
        is_active=True,
    ),
    dict(
        id=4,
        name_en="Dana Retired",
        branch="ID",
        description="Cheerful singer, graduated",
        tags=["singing"],
        is_active=False,
    ),
]

# Precomputed member vectors; query "cheerful singer" maps to axis 0.
MEMBER_VECTORS = {
    1: vec(a0=1.0),
    2: vec(a1=1.0),
    3: vec(a0=0.6, a1=0.8),
    4: vec(a0=1.0, a2=0.1),
}


@pytest.fixture()
def engine(tmp_path: Path):
    from vector_service.app.database import Base, init_db, install_sqlite_pragmas

    eng = create_engine(f"sqlite+pysqlite:///{tmp_path / 'test.sqlite3'}", connect_args={"check_same_thread": False})
    install_sqlite_pragmas(eng)
    init_db(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def members(session_factory):
    from vector_service.app.models.member import Member

    db = session_factory()
    try:
        for m in MEMBERS:
            db.add(Member(**m))
        db.commit()
    finally:
        db.close()
    return MEMBERS


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider({"cheerful singer": vec(a0=1.0), "gamer": vec(a1=1.0)})


@pytest.fixture()
def container(session_factory, provider):
    from vector_service.app.utils.dependencies import build_container

    c = build_container(session_factory, provider=provider)
    c.search.retry_backoff_s = 0
    c.indexing.retry_backoff_s = 0
    c.consumer.backoff_s = 0
    return c


@pytest.fixture()
def indexed(container, members):
    """Store the precomputed vectors for every seeded member."""
    from vector_service.app.services.members import build_searchable_text, snapshot_from_row
    from vector_service.app.models.member import Member
    from vector_service.app.services.vector_store import EmbeddingRecord

    db = container.session_factory()
    try:
        rows = db.query(Member).order_by(Member.id).all()
        snapshots = [snapshot_from_row(r) for r in rows]
    finally:
        db.close()

    for snap in snapshots:
        container.store.upsert(
            EmbeddingRecord(
                entity_id=snap.id,
                embedding=MEMBER_VECTORS[snap.id],
                searchable_text=build_searchable_text(snap),
                model_version=container.store.model_version,
            )
        )
    return snapshots


@pytest.fixture()
def app(container) -> FastAPI:
    from vector_service.app.main import create_app

    return create_app(container, run_startup=False)


@pytest.fixture()
def client(app: FastAPI):
    # Context manager keeps one event loop for the whole test, so background tasks survive between requests.
    with TestClient(app) as c:
        yield c
