import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)


def _normalize_database_url(url: str) -> str:
    # Allow simpler `.env` values like `postgres://...` and upgrade to the driver form.
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


_db_url = _normalize_database_url((DATABASE_URL or "").strip())
_engine_kwargs = {"pool_pre_ping": True}
if _db_url.startswith("sqlite"):
    # Store/cache calls run in worker threads (asyncio.to_thread), so allow cross-thread use.
    # Also set a busy timeout to reduce "database is locked" errors under concurrent requests.
    _engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}

engine = create_engine(_db_url, **_engine_kwargs)


def _set_sqlite_pragmas(dbapi_connection, connection_record):  # noqa: ANN001
    try:
        cursor = dbapi_connection.cursor()
        # Better concurrency for reads+writes in local dev.
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.close()
    except Exception as e:
        logger.warning("Failed to set SQLite pragmas: %s", e)


def install_sqlite_pragmas(target: Engine) -> None:
    if target.dialect.name == "sqlite":
        event.listen(target, "connect", _set_sqlite_pragmas)


install_sqlite_pragmas(engine)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


# pgvector HNSW + full-text indexes. PostgreSQL only: SQLite has neither operator class.
_POSTGRES_INDEX_DDL = [
    """
    CREATE INDEX IF NOT EXISTS idx_member_embeddings_combined_hnsw
    ON member_embeddings USING hnsw (embedding vector_cosine_ops)
    WITH (m = 32, ef_construction = 128)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_member_embeddings_name_hnsw
    ON member_embeddings USING hnsw (name_embedding vector_cosine_ops)
    WITH (m = 16, ef_construction = 64)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_member_embeddings_personality_hnsw
    ON member_embeddings USING hnsw (personality_embedding vector_cosine_ops)
    WITH (m = 16, ef_construction = 64)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_member_embeddings_searchable_text
    ON member_embeddings USING gin (to_tsvector('english', searchable_text))
    """,
]


def init_db(bind: Engine | None = None) -> None:
    # Import models so they register with SQLAlchemy metadata before create_all.
    from .models import cache_entry, embedding, member  # noqa: F401

    target = bind if bind is not None else engine
    is_postgres = target.dialect.name == "postgresql"

    if is_postgres:
        with target.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    Base.metadata.create_all(bind=target)

    if is_postgres:
        with target.begin() as conn:
            for ddl in _POSTGRES_INDEX_DDL:
                conn.execute(text(ddl))
        logger.info("pgvector indexes ensured on member_embeddings")
