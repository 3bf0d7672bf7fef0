import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.member import Member
from ..utils.error_handlers import IndexStorageError
from .embeddings import join_nonempty, normalize_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberSnapshot:
    """Read-only copy of the fields indexing needs, detached from any session."""
    id: int
    name_en: str
    name_ja: str | None = None
    branch: str | None = None
    generation: str | None = None
    unit: str | None = None
    fanbase_name: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    personality_traits: dict[str, Any] = field(default_factory=dict)
    personality_summary: str | None = None
    nicknames: list[str] = field(default_factory=list)
    is_active: bool = True


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(x) for x in value if x is not None and str(x).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def snapshot_from_row(row: Member) -> MemberSnapshot:
    return MemberSnapshot(
        id=int(row.id),
        name_en=row.name_en or "",
        name_ja=row.name_ja,
        branch=row.branch,
        generation=row.generation,
        unit=row.unit,
        fanbase_name=row.fanbase_name,
        description=row.description,
        tags=_as_list(row.tags),
        personality_traits=_as_dict(row.personality_traits),
        personality_summary=row.personality_summary,
        nicknames=_as_list(row.nicknames),
        is_active=bool(row.is_active),
    )


def trait_labels(traits: dict[str, Any]) -> list[str]:
    """
    personality_traits comes either as {"cheerful": 0.9} or {"energy": "high"}.
    Numeric weights keep the key; string values keep "key: value".
    """
    out: list[str] = []
    for k, v in traits.items():
        if isinstance(v, bool) or isinstance(v, (int, float)):
            out.append(str(k))
        elif v is None or str(v).strip() == "":
            out.append(str(k))
        else:
            out.append(f"{k}: {v}")
    return out


def build_searchable_text(member: MemberSnapshot) -> str:
    parts: list[str] = []
    if member.name_en:
        parts.append(f"Name: {member.name_en}")
    if member.name_ja:
        parts.append(f"Japanese: {member.name_ja}")
    if member.branch:
        parts.append(f"Branch: {member.branch}")
    if member.generation:
        parts.append(f"Generation: {member.generation}")
    if member.unit:
        parts.append(f"Unit: {member.unit}")
    if member.fanbase_name:
        parts.append(f"Fanbase: {member.fanbase_name}")
    if member.description:
        parts.append(f"Description: {member.description}")
    if member.tags:
        parts.append(f"Tags: {join_nonempty(member.tags)}")
    traits = trait_labels(member.personality_traits)
    if traits:
        parts.append(f"Traits: {join_nonempty(traits)}")
    if member.nicknames:
        parts.append(f"Nicknames: {join_nonempty(member.nicknames, ' ')}")
    if member.personality_summary:
        parts.append(f"Summary: {member.personality_summary}")
    return normalize_text(" | ".join(parts))


def build_facet_texts(member: MemberSnapshot) -> dict[str, str]:
    """Per-facet inputs for the optional name / description / personality vectors."""
    name = join_nonempty([member.name_en, member.name_ja, *member.nicknames], " ")
    description = join_nonempty([member.description, member.fanbase_name, *member.tags], " ")
    personality = join_nonempty([*trait_labels(member.personality_traits), member.personality_summary], " ")
    return {
        "name": normalize_text(name),
        "description": normalize_text(description),
        "personality": normalize_text(personality),
    }


def display_fields(member: Member | MemberSnapshot) -> dict[str, Any]:
    return {
        "name": member.name_en,
        "nameJa": member.name_ja,
        "branch": member.branch or "Unknown",
        "generation": member.generation or "Unknown",
        "unit": member.unit,
        "fanbaseName": member.fanbase_name,
        "isActive": bool(member.is_active),
        "tags": _as_list(member.tags),
        "traits": _as_dict(member.personality_traits),
    }


class MemberReader:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def fetch(self, member_id: int) -> MemberSnapshot | None:
        db = self.session_factory()
        try:
            row = db.query(Member).filter(Member.id == int(member_id)).first()
            return snapshot_from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.warning("Failed to fetch member %s: %s", member_id, e)
            raise IndexStorageError(f"Failed to read member {member_id}") from e
        finally:
            db.close()
