#!/usr/bin/env python3
"""
Create the vector service tables and dialect-specific indexes.

PostgreSQL: enables the `vector` extension, then builds HNSW (cosine) and
GIN full-text indexes on member_embeddings.
SQLite: plain tables; vectors are stored as JSON arrays.
"""

import sys
from pathlib import Path

from sqlalchemy import inspect

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from app.database import engine, init_db


def migrate():
    dialect = engine.dialect.name
    print(f"Initializing vector service schema ({dialect})...")
    init_db()
    print("✓ Tables created")

    inspector = inspect(engine)
    for table in ("members", "member_embeddings", "cache_entries"):
        if not inspector.has_table(table):
            print(f"✗ Missing table after init: {table}")
            return False
        indexes = sorted(ix["name"] for ix in inspector.get_indexes(table) if ix.get("name"))
        print(f"  {table}: {', '.join(indexes) or 'no secondary indexes'}")

    if dialect == "postgresql":
        print("✓ pgvector HNSW and full-text indexes ensured")
    else:
        print("• Non-PostgreSQL database: similarity is computed in-process (no HNSW)")
    return True


if __name__ == "__main__":
    ok = migrate()
    sys.exit(0 if ok else 1)
