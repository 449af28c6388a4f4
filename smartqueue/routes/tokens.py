"""
Token routes.
Each endpoint maps onto one orchestrator operation; queue errors are
translated to HTTP responses by the application's exception handler.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, status

from smartqueue.models.api.queue_request import GenerateTokenRequest, ReprioritizeRequest
from smartqueue.models.api.queue_response import QueueEstimateResponse, TokenResponse
from smartqueue.routes.dependencies import get_services
from smartqueue.services.container import QueueServices

router = APIRouter(prefix="/tokens", tags=["tokens"])


async def _with_queue_info(services: QueueServices, token) -> TokenResponse:
    estimate = await services.engine.estimate(token)
    return TokenResponse.from_domain(token, estimate)


@router.post("", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def generate_token(
    request: GenerateTokenRequest, services: QueueServices = Depends(get_services)
):
    token = await services.orchestrator.generate(
        party_id=request.party_id,
        group_id=request.group_id,
        point_id=request.point_id,
        priority=request.priority,
        notes=request.notes,
    )
    return await _with_queue_info(services, token)


@router.get("/by-number/{token_number}", response_model=TokenResponse)
async def get_token_by_number(
    token_number: str,
    service_date: date | None = Query(default=None, description="Defaults to today"),
    services: QueueServices = Depends(get_services),
):
    token = await services.orchestrator.get_token_by_number(token_number, service_date)
    return await _with_queue_info(services, token)


@router.get("/{token_id}", response_model=TokenResponse)
async def get_token(token_id: int, services: QueueServices = Depends(get_services)):
    token = await services.orchestrator.get_token(token_id)
    return await _with_queue_info(services, token)


@router.get("/{token_id}/position", response_model=QueueEstimateResponse)
async def get_position(token_id: int, services: QueueServices = Depends(get_services)):
    return QueueEstimateResponse.from_domain(await services.orchestrator.position(token_id))


@router.post("/{token_id}/cancel", response_model=TokenResponse)
async def cancel_token(token_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.cancel(token_id))


@router.post("/{token_id}/start", response_model=TokenResponse)
async def start_service(token_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.start_service(token_id))


@router.post("/{token_id}/end", response_model=TokenResponse)
async def end_service(token_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.end_service(token_id))


@router.post("/{token_id}/no-show", response_model=TokenResponse)
async def mark_no_show(token_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.mark_no_show(token_id))


@router.post("/{token_id}/skip", response_model=TokenResponse)
async def skip_token(token_id: int, services: QueueServices = Depends(get_services)):
    token = await services.orchestrator.skip(token_id)
    return await _with_queue_info(services, token)


@router.post("/{token_id}/abort", response_model=TokenResponse)
async def abort_token(token_id: int, services: QueueServices = Depends(get_services)):
    return TokenResponse.from_domain(await services.orchestrator.abort_active(token_id))


@router.post("/{token_id}/priority", response_model=TokenResponse)
async def reprioritize_token(
    token_id: int,
    request: ReprioritizeRequest,
    services: QueueServices = Depends(get_services),
):
    token = await services.orchestrator.reprioritize(token_id, request.priority)
    return await _with_queue_info(services, token)
