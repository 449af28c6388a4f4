"""
Service point routes: calling the next party and reading the live queue.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query

from smartqueue.models.api.queue_response import (
    CurrentServingResponse,
    QueueSnapshotResponse,
    TokenResponse,
)
from smartqueue.routes.dependencies import get_services
from smartqueue.services.container import QueueServices

router = APIRouter(prefix="/service-points", tags=["service-points"])


@router.post("/{point_id}/call-next", response_model=TokenResponse)
async def call_next(point_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.call_next(point_id))


@router.get("/{point_id}/queue", response_model=QueueSnapshotResponse)
async def get_queue(
    point_id: int,
    service_date: date | None = Query(default=None, description="Defaults to today"),
    services: QueueServices = Depends(get_services),
):
    snapshot = await services.orchestrator.queue_snapshot(point_id, service_date)
    return QueueSnapshotResponse.from_domain(snapshot)


@router.get("/{point_id}/current", response_model=CurrentServingResponse)
async def get_current(
    point_id: int,
    service_date: date | None = Query(default=None, description="Defaults to today"),
    services: QueueServices = Depends(get_services),
):
    service_date = service_date or services.clock.today()
    token = await services.orchestrator.current_serving(point_id, service_date)
    return CurrentServingResponse(
        point_id=point_id,
        service_date=service_date,
        token=TokenResponse.from_domain(token) if token else None,
    )
