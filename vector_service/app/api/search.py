import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..schemas.search import SearchRequest, SearchResponseOut
from ..services.search import SearchOrchestrator, SearchQueryBuilder
from ..utils.dependencies import get_search_service
from ..utils.error_handlers import AppError, public_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


def _failure(error: AppError, *, query_time_ms: int = 0) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={
            "success": False,
            "error": public_error_message(error),
            "errorCode": error.code,
            "retryable": error.retryable,
            "results": [],
            "totalResults": 0,
            "queryTimeMs": query_time_ms,
        },
    )


@router.post("", response_model=SearchResponseOut)
async def search(payload: SearchRequest, service: SearchOrchestrator = Depends(get_search_service)):
    try:
        query = (
            SearchQueryBuilder(payload.query)
            .limit(payload.limit)
            .active_only(payload.active_only)
            .min_similarity(payload.min_similarity)
            .hybrid(payload.hybrid, vector_weight=payload.vector_weight, text_weight=payload.text_weight)
            .build()
        )
    except AppError as e:
        return _failure(e)

    response = await service.search(query)
    if response.error is not None:
        return _failure(response.error, query_time_ms=response.query_time_ms)
    return SearchResponseOut.model_validate(response.to_dict())
