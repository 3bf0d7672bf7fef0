import os
from pathlib import Path
from dotenv import load_dotenv

# Override=True so changes in .env take effect on process reload (and not get
# stuck on old environment variables).
#
# For automated tests (SQLite), we need to prevent .env from overriding the
# test DATABASE_URL. Set DISABLE_DOTENV=1 to skip loading .env.
if os.getenv("DISABLE_DOTENV") != "1":
    load_dotenv(override=True)


def _env_bool(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).strip() in {"1", "true", "True", "yes", "YES"}


_raw_database_url = (os.getenv("DATABASE_URL") or "").strip()
# Default to a local SQLite DB for dev so the service can start out-of-the-box.
# Use an absolute path so it works regardless of current working directory.
_default_sqlite_path = (Path(__file__).resolve().parent.parent / "dev.db").as_posix()
DATABASE_URL = _raw_database_url or f"sqlite:///{_default_sqlite_path}"

# -------------------- Embedding provider (Gemini) --------------------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
GEMINI_API_VERSION = os.getenv("GEMINI_API_VERSION", "v1beta")
EMBEDDINGS_MODEL = os.getenv("EMBEDDINGS_MODEL", "gemini-embedding-001")

# Fixed for the deployed model; rows with any other length are rejected.
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1536") or "1536")
# Roughly 2048 tokens at ~4 chars/token. Longer input keeps only its head.
EMBEDDING_MAX_INPUT_CHARS = int(os.getenv("EMBEDDING_MAX_INPUT_CHARS", "8000") or "8000")

AI_TIMEOUT_S = float(os.getenv("AI_TIMEOUT_S", "10") or "10")
AI_LOG_PAYLOADS = _env_bool("AI_LOG_PAYLOADS", "0")

# -------------------- Search --------------------
SEARCH_DEFAULT_LIMIT = int(os.getenv("SEARCH_DEFAULT_LIMIT", "10") or "10")
SEARCH_MAX_LIMIT = int(os.getenv("SEARCH_MAX_LIMIT", "50") or "50")
SEARCH_MAX_QUERY_CHARS = int(os.getenv("SEARCH_MAX_QUERY_CHARS", "1000") or "1000")
SEARCH_TIMEOUT_S = float(os.getenv("SEARCH_TIMEOUT_S", "15") or "15")
SEARCH_RETRY_BACKOFF_S = float(os.getenv("SEARCH_RETRY_BACKOFF_S", "0.2") or "0.2")
HYBRID_VECTOR_WEIGHT = float(os.getenv("HYBRID_VECTOR_WEIGHT", "0.7") or "0.7")
HYBRID_TEXT_WEIGHT = float(os.getenv("HYBRID_TEXT_WEIGHT", "0.3") or "0.3")

# -------------------- Cache --------------------
CACHE_ENABLED = _env_bool("CACHE_ENABLED", "1")
CACHE_TTL_SEARCH_S = int(os.getenv("CACHE_TTL_SEARCH_S", "300") or "300")
CACHE_TTL_MEMBER_INDEX_S = int(os.getenv("CACHE_TTL_MEMBER_INDEX_S", "3600") or "3600")
CACHE_TTL_EMBEDDING_S = int(os.getenv("CACHE_TTL_EMBEDDING_S", "86400") or "86400")
CACHE_TTL_STATUS_S = int(os.getenv("CACHE_TTL_STATUS_S", "60") or "60")

# -------------------- Reindexing --------------------
REINDEX_MAX_RETRIES = int(os.getenv("REINDEX_MAX_RETRIES", "3") or "3")
REINDEX_BACKOFF_S = float(os.getenv("REINDEX_BACKOFF_S", "0.5") or "0.5")
EVENT_DEDUP_TTL_S = int(os.getenv("EVENT_DEDUP_TTL_S", "600") or "600")
EVENT_DEDUP_MAX_SIZE = int(os.getenv("EVENT_DEDUP_MAX_SIZE", "10000") or "10000")
# Also store per-facet vectors (name / description / personality). Costs 3 extra provider calls per index.
VECTOR_FACETS_ENABLED = _env_bool("VECTOR_FACETS_ENABLED", "0")

# -------------------- Service --------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", "0")
