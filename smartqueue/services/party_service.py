"""
Party registration.

Parties are identified by phone: registering an existing phone returns the
stored party unchanged.
"""

from datetime import date

from smartqueue.config import Settings
from smartqueue.core.clock import Clock
from smartqueue.core.errors import NotFoundError
from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import Party
from smartqueue.repositories.base import DuplicatePhoneError, QueueRepository

logger = get_logger(__name__)


class PartyService:
    def __init__(self, repository: QueueRepository, clock: Clock, settings: Settings):
        self.repository = repository
        self.clock = clock
        self.settings = settings

    async def get_party(self, party_id: int) -> Party:
        party = await self.repository.get_party(party_id)
        if party is None:
            raise NotFoundError.for_entity("Party", "id", party_id)
        return party

    async def find_or_register(
        self,
        *,
        name: str,
        phone: str,
        email: str | None = None,
        date_of_birth: date | None = None,
        is_senior: bool = False,
        is_expectant: bool = False,
    ) -> tuple[Party, bool]:
        """Return ``(party, created)``."""
        phone = phone.strip()
        existing = await self.repository.get_party_by_phone(phone)
        if existing is not None:
            return existing, False

        candidate = Party(
            id=None,
            name=name.strip(),
            phone=phone,
            email=email,
            date_of_birth=date_of_birth,
            is_expectant=is_expectant,
            created_at=self.clock.now(),
        )
        candidate.is_senior = is_senior or candidate.is_senior_on(
            self.clock.today(), self.settings.SENIOR_AGE_THRESHOLD
        )

        try:
            async with self.repository.transaction() as tx:
                party = await self.repository.create_party(candidate, tx=tx)
        except DuplicatePhoneError:
            # Lost a race with a concurrent registration of the same phone
            party = await self.repository.get_party_by_phone(phone)
            if party is None:
                raise
            return party, False

        logger.info("Party registered", party_id=party.id, is_senior=party.is_senior)
        return party, True
