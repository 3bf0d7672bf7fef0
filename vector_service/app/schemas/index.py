from pydantic import BaseModel, ConfigDict, Field


class IndexRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Range is checked by the indexing service so the failure carries INDEX_INVALID_ENTITY_ID.
    entity_id: int | str = Field(alias="entityId")
    force_reindex: bool = Field(False, alias="forceReindex")
