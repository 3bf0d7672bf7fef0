import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from ..services.reindex_consumer import ReindexEventConsumer
from ..utils.dependencies import get_consumer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("")
async def push_event(
    payload: dict[str, Any] = Body(...),
    routing_key: str | None = Query(None, alias="routingKey"),
    consumer: ReindexEventConsumer = Depends(get_consumer),
):
    """HTTP push transport for member change events."""
    outcome = await consumer.handle_message(payload, routing_key)
    body = {"success": outcome.ok, **outcome.to_dict()}
    if outcome.ok or outcome.error is None:
        return body
    return JSONResponse(status_code=outcome.error.status_code, content=body)
