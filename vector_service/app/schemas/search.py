from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..services.embeddings import clamp_score


# Loose number type: unusable values are ignored by SearchQueryBuilder rather than rejected here.
LooseNumber = int | float | str | None


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    limit: LooseNumber = None
    active_only: bool = Field(True, alias="activeOnly")
    min_similarity: LooseNumber = Field(None, alias="minSimilarity")
    hybrid: bool = False
    vector_weight: LooseNumber = Field(None, alias="vectorWeight")
    text_weight: LooseNumber = Field(None, alias="textWeight")


class SearchResultOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    entity_id: int = Field(alias="entityId")
    name: str | None = None
    score: float = 0.0
    rank: int = 0

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, v: Any) -> float:
        return clamp_score(v)


class SearchResponseOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    results: list[SearchResultOut] = Field(default_factory=list)
    query_time_ms: int = Field(0, alias="queryTimeMs")
    total_results: int = Field(0, alias="totalResults")
    cached: bool = False
