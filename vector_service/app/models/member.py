from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from ..database import Base


class Member(Base):
    """
    Canonical member record. Owned and written by the member service;
    this service only reads it to build searchable text and display fields.
    """
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    name_en = Column(String(100), nullable=False)
    name_ja = Column(String(100), nullable=True)
    branch = Column(String(50), nullable=True)
    generation = Column(String(50), nullable=True)
    unit = Column(String(100), nullable=True)
    fanbase_name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)  # list[str]
    personality_traits = Column(JSON, nullable=True)  # {trait: weight|label}
    personality_summary = Column(Text, nullable=True)
    nicknames = Column(JSON, nullable=True)  # list[str]
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, name_en={self.name_en!r}, active={self.is_active})>"
