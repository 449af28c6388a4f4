"""
Party registration routes.
"""

from fastapi import APIRouter, Depends, Response, status

from smartqueue.models.api.queue_request import RegisterPartyRequest
from smartqueue.models.api.queue_response import PartyResponse, RegisterPartyResponse, TokenResponse
from smartqueue.routes.dependencies import get_services
from smartqueue.services.container import QueueServices

router = APIRouter(prefix="/parties", tags=["parties"])


@router.post("", response_model=RegisterPartyResponse, status_code=status.HTTP_201_CREATED)
async def register_party(
    request: RegisterPartyRequest,
    response: Response,
    services: QueueServices = Depends(get_services),
):
    """Register a party, or return the existing one registered under the same phone."""
    party, created = await services.parties.find_or_register(
        name=request.name,
        phone=request.phone,
        email=request.email,
        date_of_birth=request.date_of_birth,
        is_senior=request.is_senior,
        is_expectant=request.is_expectant,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return RegisterPartyResponse(party=PartyResponse.from_domain(party), created=created)


@router.get("/{party_id}", response_model=PartyResponse)
async def get_party(party_id: int, services: QueueServices = Depends(get_services)):
    return PartyResponse.from_domain(await services.parties.get_party(party_id))


@router.get("/{party_id}/tokens", response_model=list[TokenResponse])
async def list_party_tokens(party_id: int, services: QueueServices = Depends(get_services)):
    """Tokens the party holds for today."""
    tokens = await services.orchestrator.list_party_tokens(party_id)
    return [TokenResponse.from_domain(token) for token in tokens]
