from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from ..config import EMBEDDING_DIMENSION
from ..database import Base


def _vector_type():
    # pgvector on PostgreSQL; a plain JSON float array everywhere else (SQLite dev/tests).
    return Vector(EMBEDDING_DIMENSION).with_variant(JSON(none_as_null=True), "sqlite")


class MemberEmbedding(Base):
    __tablename__ = "member_embeddings"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    model_version = Column(String(120), nullable=False)

    # Combined vector used for search; facet vectors are optional.
    embedding = Column(_vector_type(), nullable=False)
    name_embedding = Column(_vector_type(), nullable=True)
    description_embedding = Column(_vector_type(), nullable=True)
    personality_embedding = Column(_vector_type(), nullable=True)

    searchable_text = Column(Text, nullable=False)
    text_hash = Column(String(64), nullable=False)
    dimension = Column(Integer, nullable=False, default=EMBEDDING_DIMENSION)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("member_id", "model_version", name="uq_member_embeddings_member_model"),
        Index("ix_member_embeddings_member_id", "member_id"),
        Index("ix_member_embeddings_model_version", "model_version"),
        Index("ix_member_embeddings_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<MemberEmbedding(member={self.member_id}, model={self.model_version}, dim={self.dimension})>"
