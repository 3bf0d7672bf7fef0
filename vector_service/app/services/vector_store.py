"""
Vector Store

Owns persistence of member embeddings (`member_embeddings`) and runs
similarity / hybrid queries against them.

On PostgreSQL the pgvector `<=>` operator (cosine distance) and the HNSW index
do the ranking, and ts_rank supplies the lexical half of hybrid scores.
On any other dialect (SQLite in dev/tests) vectors are JSON arrays and both
halves are computed in Python over the candidate rows.

Scores surfaced to callers are always `1 - cosine_distance` clamped to [0, 1].
Ranking uses the unclamped value so ties broken by clamping stay ordered; a
degenerate distance (NaN / NULL, e.g. a zero vector) ranks last.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import case, func, literal_column, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import EMBEDDING_DIMENSION, EMBEDDINGS_MODEL, HYBRID_TEXT_WEIGHT, HYBRID_VECTOR_WEIGHT
from ..models.embedding import MemberEmbedding
from ..models.member import Member
from ..utils.error_handlers import DimensionMismatch, EntityNotFound, IndexNotReady, IndexStorageError, SearchStoreError
from .embeddings import clamp_score, cosine_similarity, lexical_rank, text_hash, vector_to_list
from .members import display_fields


logger = logging.getLogger(__name__)

FACETS = ("combined", "name", "description", "personality")
# Raw score given to rows whose distance is undefined; below any real cosine similarity.
_DEGENERATE_SCORE = -2.0


@dataclass
class EmbeddingRecord:
    entity_id: int
    embedding: list[float]
    searchable_text: str
    model_version: str = EMBEDDINGS_MODEL
    facets: dict[str, list[float]] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UpsertResult:
    entity_id: int
    model_version: str
    replaced: bool
    updated_at: datetime


@dataclass
class SearchResult:
    entity_id: int
    display_fields: dict[str, Any]
    score: float
    rank: int
    vector_score: float | None = None
    text_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"entityId": self.entity_id, **self.display_fields}
        payload["score"] = self.score
        payload["rank"] = self.rank
        if self.vector_score is not None:
            payload["vectorScore"] = self.vector_score
        if self.text_score is not None:
            payload["textScore"] = self.text_score
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchResult":
        reserved = {"entityId", "score", "rank", "vectorScore", "textScore"}
        return cls(
            entity_id=int(data["entityId"]),
            display_fields={k: v for k, v in data.items() if k not in reserved},
            score=clamp_score(data.get("score")),
            rank=int(data.get("rank") or 0),
            vector_score=data.get("vectorScore"),
            text_score=data.get("textScore"),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _search_error(exc: SQLAlchemyError, message: str) -> SearchStoreError | IndexNotReady:
    # Missing table or pgvector extension: the index has not been created yet.
    detail = str(getattr(exc, "orig", None) or exc).lower()
    if "no such table" in detail or "does not exist" in detail:
        return IndexNotReady(f"{message}: index not initialized")
    return SearchStoreError(message)

def _raw_from_distance(distance: Any) -> float | None:
    if distance is None:
        return None
    try:
        d = float(distance)
    except (TypeError, ValueError):
        return None
    if math.isnan(d) or math.isinf(d):
        return None
    return 1.0 - d


def _rank(results: list[SearchResult]) -> list[SearchResult]:
    for i, r in enumerate(results, start=1):
        r.rank = i
    return results


class VectorStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        model_version: str = EMBEDDINGS_MODEL,
        dimension: int = EMBEDDING_DIMENSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.model_version = model_version
        self.dimension = dimension
        self.clock = clock

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _is_postgres(db: Session) -> bool:
        return db.get_bind().dialect.name == "postgresql"

    @staticmethod
    def _facet_column(facet: str):
        columns = {
            "combined": MemberEmbedding.embedding,
            "name": MemberEmbedding.name_embedding,
            "description": MemberEmbedding.description_embedding,
            "personality": MemberEmbedding.personality_embedding,
        }
        if facet not in FACETS:
            raise ValueError(f"Unknown embedding facet: {facet}")
        return columns[facet]

    def _check_dimension(self, vector: list[float]) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatch(expected=self.dimension, actual=len(vector))

    def _candidate_stmt(self, column, active_only: bool):
        stmt = (
            select(MemberEmbedding, Member)
            .join(Member, Member.id == MemberEmbedding.member_id)
            .where(MemberEmbedding.model_version == self.model_version)
            .where(column.isnot(None))
        )
        if active_only:
            stmt = stmt.where(Member.is_active.is_(True))
        return stmt

    # ------------------------------------------------------------------ writes

    def upsert(self, record: EmbeddingRecord) -> UpsertResult:
        """
        Replace-by-(entity_id, model_version). A repeat upsert overwrites the
        vectors and searchable text and bumps updated_at.
        """
        self._check_dimension(record.embedding)
        for facet, vec in record.facets.items():
            self._facet_column(facet)
            self._check_dimension(vec)

        db: Session = self.session_factory()
        try:
            if not db.query(Member.id).filter(Member.id == int(record.entity_id)).first():
                raise EntityNotFound(int(record.entity_id))

            row = (
                db.query(MemberEmbedding)
                .filter(
                    MemberEmbedding.member_id == int(record.entity_id),
                    MemberEmbedding.model_version == record.model_version,
                )
                .first()
            )
            now = record.updated_at or self.clock()
            replaced = row is not None
            if row is None:
                row = MemberEmbedding(
                    member_id=int(record.entity_id),
                    model_version=record.model_version,
                    created_at=now,
                )

            row.embedding = [float(x) for x in record.embedding]
            row.name_embedding = record.facets.get("name")
            row.description_embedding = record.facets.get("description")
            row.personality_embedding = record.facets.get("personality")
            row.searchable_text = record.searchable_text
            row.text_hash = text_hash(text=record.searchable_text, model=record.model_version)
            row.dimension = len(record.embedding)
            row.updated_at = now
            db.add(row)
            db.commit()
            logger.info(
                "Embedding %s: member=%s model=%s",
                "replaced" if replaced else "stored",
                record.entity_id,
                record.model_version,
            )
            return UpsertResult(
                entity_id=int(record.entity_id),
                model_version=record.model_version,
                replaced=replaced,
                updated_at=now,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Embedding upsert failed for member=%s: %s", record.entity_id, e)
            raise IndexStorageError(f"Failed to store embedding for member {record.entity_id}") from e
        finally:
            db.close()

    def delete(self, entity_id: int) -> int:
        """Remove the member's rows for every model version."""
        db: Session = self.session_factory()
        try:
            count = (
                db.query(MemberEmbedding)
                .filter(MemberEmbedding.member_id == int(entity_id))
                .delete(synchronize_session=False)
            )
            db.commit()
            logger.info("Removed %s embedding rows for member=%s", count, entity_id)
            return count
        except SQLAlchemyError as e:
            db.rollback()
            raise IndexStorageError(f"Failed to delete embeddings for member {entity_id}") from e
        finally:
            db.close()

    # ------------------------------------------------------------------ reads

    def exists(self, entity_id: int) -> datetime | None:
        db: Session = self.session_factory()
        try:
            row = (
                db.query(MemberEmbedding.updated_at)
                .filter(
                    MemberEmbedding.member_id == int(entity_id),
                    MemberEmbedding.model_version == self.model_version,
                )
                .first()
            )
            if not row:
                return None
            ts = row[0]
            if ts is not None and ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            return ts
        except SQLAlchemyError as e:
            raise IndexStorageError(f"Failed to check existing index for member {entity_id}") from e
        finally:
            db.close()

    def get(self, entity_id: int) -> EmbeddingRecord | None:
        db: Session = self.session_factory()
        try:
            row = (
                db.query(MemberEmbedding)
                .filter(
                    MemberEmbedding.member_id == int(entity_id),
                    MemberEmbedding.model_version == self.model_version,
                )
                .first()
            )
            if not row:
                return None
            facets = {}
            for facet, attr in (
                ("name", row.name_embedding),
                ("description", row.description_embedding),
                ("personality", row.personality_embedding),
            ):
                if attr is not None:
                    facets[facet] = vector_to_list(attr)
            return EmbeddingRecord(
                entity_id=int(row.member_id),
                embedding=vector_to_list(row.embedding),
                searchable_text=row.searchable_text,
                model_version=row.model_version,
                facets=facets,
                updated_at=row.updated_at,
            )
        finally:
            db.close()

    def query(
        self,
        query_vector: list[float],
        limit: int,
        active_only: bool = False,
        *,
        facet: str = "combined",
    ) -> list[SearchResult]:
        """Nearest members by cosine similarity, best first."""
        self._check_dimension(query_vector)
        column = self._facet_column(facet)
        limit = max(1, int(limit))

        db: Session = self.session_factory()
        try:
            if self._is_postgres(db):
                distance = column.cosine_distance(query_vector)
                stmt = (
                    self._candidate_stmt(column, active_only)
                    .add_columns(distance.label("distance"))
                    .order_by(distance.asc(), MemberEmbedding.member_id.asc())
                    .limit(limit)
                )
                scored = [
                    (emb.member_id, member, _raw_from_distance(dist))
                    for emb, member, dist in db.execute(stmt).all()
                ]
            else:
                rows = db.execute(self._candidate_stmt(column, active_only)).all()
                scored = [
                    (emb.member_id, member, cosine_similarity(query_vector, vector_to_list(getattr(emb, column.key))))
                    for emb, member in rows
                ]
                scored.sort(key=lambda t: (-(t[2] if t[2] is not None else _DEGENERATE_SCORE), t[0]))
                scored = scored[:limit]

            return _rank(
                [
                    SearchResult(
                        entity_id=int(member_id),
                        display_fields=display_fields(member),
                        score=clamp_score(raw),
                        rank=0,
                    )
                    for member_id, member, raw in scored
                ]
            )
        except SQLAlchemyError as e:
            logger.warning("Vector query failed: %s", e)
            raise _search_error(e, "Vector query failed") from e
        finally:
            db.close()

    def hybrid_query(
        self,
        query_vector: list[float],
        query_text: str,
        vector_weight: float = HYBRID_VECTOR_WEIGHT,
        text_weight: float = HYBRID_TEXT_WEIGHT,
        limit: int = 10,
        active_only: bool = False,
    ) -> list[SearchResult]:
        """
        combined = vector_weight * vector_score + text_weight * text_rank

        Weights are used as given. With (1, 0) the ranking matches query().
        """
        self._check_dimension(query_vector)
        column = MemberEmbedding.embedding
        limit = max(1, int(limit))
        vw = float(vector_weight)
        tw = float(text_weight)

        db: Session = self.session_factory()
        try:
            if self._is_postgres(db):
                distance = column.cosine_distance(query_vector)
                raw_vector = case(
                    (distance.is_(None), _DEGENERATE_SCORE),
                    (distance == literal_column("'NaN'::float8"), _DEGENERATE_SCORE),
                    else_=1.0 - distance,
                )
                text_rank = func.ts_rank(
                    func.to_tsvector("english", MemberEmbedding.searchable_text),
                    func.plainto_tsquery("english", query_text or ""),
                )
                combined = vw * raw_vector + tw * text_rank
                stmt = (
                    self._candidate_stmt(column, active_only)
                    .add_columns(distance.label("distance"), text_rank.label("text_rank"), combined.label("combined"))
                    .order_by(combined.desc(), MemberEmbedding.member_id.asc())
                    .limit(limit)
                )
                scored = [
                    (emb.member_id, member, _raw_from_distance(dist), float(rank or 0.0), comb)
                    for emb, member, dist, rank, comb in db.execute(stmt).all()
                ]
            else:
                scored = []
                for emb, member in db.execute(self._candidate_stmt(column, active_only)).all():
                    raw = cosine_similarity(query_vector, vector_to_list(emb.embedding))
                    rank = lexical_rank(query_text, emb.searchable_text or "")
                    comb = vw * (raw if raw is not None else _DEGENERATE_SCORE) + tw * rank
                    scored.append((emb.member_id, member, raw, rank, comb))
                scored.sort(key=lambda t: (-t[4], t[0]))
                scored = scored[:limit]

            results = []
            for member_id, member, raw, rank, comb in scored:
                vector_score = clamp_score(raw)
                text_score = clamp_score(rank)
                results.append(
                    SearchResult(
                        entity_id=int(member_id),
                        display_fields=display_fields(member),
                        score=clamp_score(vw * vector_score + tw * text_score),
                        rank=0,
                        vector_score=vector_score,
                        text_score=text_score,
                    )
                )
            return _rank(results)
        except SQLAlchemyError as e:
            logger.warning("Hybrid query failed: %s", e)
            raise _search_error(e, "Hybrid query failed") from e
        finally:
            db.close()

    # ------------------------------------------------------------------ stats

    def count_embeddings(self) -> int:
        db: Session = self.session_factory()
        try:
            return int(
                db.query(func.count(MemberEmbedding.id))
                .filter(MemberEmbedding.model_version == self.model_version)
                .scalar()
                or 0
            )
        finally:
            db.close()

    def count_active_embeddings(self) -> int:
        db: Session = self.session_factory()
        try:
            return int(
                db.query(func.count(MemberEmbedding.id))
                .join(Member, Member.id == MemberEmbedding.member_id)
                .filter(MemberEmbedding.model_version == self.model_version, Member.is_active.is_(True))
                .scalar()
                or 0
            )
        finally:
            db.close()

    def index_type(self) -> str:
        db: Session = self.session_factory()
        try:
            return "HNSW" if self._is_postgres(db) else "FLAT"
        finally:
            db.close()

    def ping(self) -> bool:
        db: Session = self.session_factory()
        try:
            db.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.warning("Vector store ping failed: %s", e)
            return False
        finally:
            db.close()
