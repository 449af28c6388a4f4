# smartqueue/models/api/queue_response.py
from datetime import date, datetime

from pydantic import BaseModel, Field

from smartqueue.models.domain import Party, QueueEstimate, QueueSnapshot, Token


class ErrorResponse(BaseModel):
    """Body of every queue error response."""

    error: str = Field(..., description="Machine-readable error kind")
    detail: str


class PartyResponse(BaseModel):
    id: int
    name: str
    phone: str
    email: str | None = None
    date_of_birth: date | None = None
    is_senior: bool
    is_expectant: bool
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, party: Party) -> "PartyResponse":
        return cls(
            id=party.id,
            name=party.name,
            phone=party.phone,
            email=party.email,
            date_of_birth=party.date_of_birth,
            is_senior=party.is_senior,
            is_expectant=party.is_expectant,
            created_at=party.created_at,
        )


class RegisterPartyResponse(BaseModel):
    """Response for POST /parties"""

    party: PartyResponse
    created: bool = Field(..., description="False when the phone was already registered")


class QueueEstimateResponse(BaseModel):
    position: int = Field(..., description="1-based queue position; 0 when not waiting")
    patients_ahead: int
    estimated_wait_minutes: int
    estimated_service_time: datetime | None = None

    @classmethod
    def from_domain(cls, estimate: QueueEstimate) -> "QueueEstimateResponse":
        return cls(
            position=estimate.position,
            patients_ahead=estimate.patients_ahead,
            estimated_wait_minutes=estimate.estimated_wait_minutes,
            estimated_service_time=estimate.estimated_service_time,
        )


class TokenResponse(BaseModel):
    id: int
    token_number: str
    party_id: int
    group_id: int
    point_id: int | None = None
    service_date: date
    priority: str
    priority_score: int
    skip_count: int
    status: str
    generated_at: datetime
    called_at: datetime | None = None
    consultation_started_at: datetime | None = None
    consultation_ended_at: datetime | None = None
    notes: str | None = None
    queue: QueueEstimateResponse | None = None

    @classmethod
    def from_domain(
        cls, token: Token, estimate: QueueEstimate | None = None
    ) -> "TokenResponse":
        return cls(
            id=token.id,
            token_number=token.token_number,
            party_id=token.party_id,
            group_id=token.group_id,
            point_id=token.point_id,
            service_date=token.service_date,
            priority=token.priority.value,
            priority_score=token.priority_score,
            skip_count=token.skip_count,
            status=token.status.value,
            generated_at=token.generated_at,
            called_at=token.called_at,
            consultation_started_at=token.consultation_started_at,
            consultation_ended_at=token.consultation_ended_at,
            notes=token.notes,
            queue=QueueEstimateResponse.from_domain(estimate) if estimate else None,
        )


class CurrentServingResponse(BaseModel):
    """Response for GET /service-points/{id}/current"""

    point_id: int
    service_date: date
    token: TokenResponse | None = None


class QueueSnapshotResponse(BaseModel):
    """Response for GET /service-points/{id}/queue"""

    point_id: int
    point_name: str
    room_label: str | None = None
    is_available: bool
    service_date: date
    current_token: TokenResponse | None = None
    waiting: list[TokenResponse]
    total_waiting: int
    average_service_minutes: float

    @classmethod
    def from_domain(cls, snapshot: QueueSnapshot) -> "QueueSnapshotResponse":
        return cls(
            point_id=snapshot.point.id,
            point_name=snapshot.point.name,
            room_label=snapshot.point.room_label,
            is_available=snapshot.point.is_available,
            service_date=snapshot.service_date,
            current_token=(
                TokenResponse.from_domain(snapshot.current_token)
                if snapshot.current_token
                else None
            ),
            waiting=[
                TokenResponse.from_domain(token, estimate) for token, estimate in snapshot.waiting
            ],
            total_waiting=snapshot.total_waiting,
            average_service_minutes=round(snapshot.average_service_minutes, 2),
        )
