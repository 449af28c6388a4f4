"""
Domain models for the token queue.

Plain dataclasses shared by the repositories, the queue engine, the state
machine and the notifier. Tokens reference their party, service group and
service point by identifier only; reverse lookups go through the repository.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Priority(str, Enum):
    NORMAL = "NORMAL"
    VIP = "VIP"
    SENIOR = "SENIOR"
    EXPECTANT = "EXPECTANT"
    EMERGENCY = "EMERGENCY"


class TokenStatus(str, Enum):
    WAITING = "WAITING"
    CALLED = "CALLED"
    IN_CONSULTATION = "IN_CONSULTATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


TERMINAL_STATUSES = frozenset({TokenStatus.COMPLETED, TokenStatus.CANCELLED, TokenStatus.NO_SHOW})
SERVING_STATUSES = frozenset({TokenStatus.CALLED, TokenStatus.IN_CONSULTATION})


class MessageKind(str, Enum):
    CONFIRMATION = "CONFIRMATION"
    TURN_CALLED = "TURN_CALLED"
    ADVANCEMENT = "ADVANCEMENT"
    REGRESSION = "REGRESSION"
    COMPLETED = "COMPLETED"


@dataclass(slots=True)
class Party:
    """A person who may hold tokens; unique by contact phone."""

    id: int | None
    name: str
    phone: str
    email: str | None = None
    date_of_birth: date | None = None
    is_senior: bool = False
    is_expectant: bool = False
    created_at: datetime | None = None

    def age_on(self, on: date) -> int | None:
        if self.date_of_birth is None:
            return None
        born = self.date_of_birth
        return on.year - born.year - ((on.month, on.day) < (born.month, born.day))

    def is_senior_on(self, on: date, threshold: int) -> bool:
        """Explicit flag or age at or above the threshold on the given date."""
        if self.is_senior:
            return True
        age = self.age_on(on)
        return age is not None and age >= threshold


@dataclass(slots=True)
class ServiceGroup:
    """Department or product line; its code scopes token numbering."""

    id: int | None
    code: str
    name: str


@dataclass(slots=True)
class ServicePoint:
    """A single queue: a doctor's room, a counter, a cabin."""

    id: int | None
    name: str
    group_id: int
    room_label: str | None = None
    service_duration_minutes: int = 15
    daily_capacity: int = 50
    is_available: bool = True


@dataclass(slots=True)
class Token:
    """Represents a tokens row."""

    id: int | None
    token_number: str
    party_id: int
    group_id: int
    point_id: int | None
    service_date: date
    priority: Priority
    priority_score: int
    status: TokenStatus
    generated_at: datetime
    called_at: datetime | None = None
    consultation_started_at: datetime | None = None
    consultation_ended_at: datetime | None = None
    notes: str | None = None
    skip_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status == TokenStatus.WAITING

    def queue_key(self) -> tuple:
        """Ascending sort key: higher score first, fewer skips, earlier arrival, lower id."""
        return (-self.priority_score, self.skip_count, self.generated_at, self.id or 0)


@dataclass(slots=True)
class QueueEstimate:
    """Position and wait estimate for one token."""

    position: int
    patients_ahead: int
    estimated_wait_minutes: int
    estimated_service_time: datetime | None


@dataclass(slots=True)
class QueueSnapshot:
    """Derived view of one service point's queue on a date."""

    point: ServicePoint
    service_date: date
    current_token: Token | None
    waiting: list[tuple[Token, QueueEstimate]] = field(default_factory=list)
    average_service_minutes: float = 0.0

    @property
    def total_waiting(self) -> int:
        return len(self.waiting)
