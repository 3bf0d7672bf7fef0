import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..schemas.index import IndexRequest
from ..services.indexing import IndexingService, IndexOutcome
from ..utils.dependencies import get_indexing_service
from ..utils.error_handlers import public_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/index", tags=["Index"])


def _respond(outcome: IndexOutcome) -> JSONResponse | dict:
    body = outcome.to_dict()
    if outcome.error is None:
        return body
    body["error"] = public_error_message(outcome.error, operation="index")
    return JSONResponse(status_code=outcome.error.status_code, content=body)


@router.post("")
async def index_member(payload: IndexRequest, service: IndexingService = Depends(get_indexing_service)):
    outcome = await service.index(payload.entity_id, force=payload.force_reindex)
    return _respond(outcome)


@router.put("/{entity_id}")
async def reindex_member(entity_id: str, service: IndexingService = Depends(get_indexing_service)):
    outcome = await service.index(entity_id, force=True)
    return _respond(outcome)


@router.delete("/{entity_id}")
async def remove_member(entity_id: str, service: IndexingService = Depends(get_indexing_service)):
    outcome = await service.remove(entity_id)
    return _respond(outcome)
