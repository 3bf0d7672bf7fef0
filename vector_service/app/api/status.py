import asyncio

from fastapi import APIRouter, Depends

from ..services.metrics import MetricsCollector
from ..services.status import StatusService
from ..utils.dependencies import get_metrics, get_status_service

router = APIRouter(tags=["Status"])


@router.get("/status")
async def index_status(service: StatusService = Depends(get_status_service)):
    return await asyncio.to_thread(service.status)


@router.get("/metrics")
def metrics_snapshot(metrics: MetricsCollector = Depends(get_metrics)):
    return metrics.snapshot()
