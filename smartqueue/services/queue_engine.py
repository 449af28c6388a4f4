"""
Read-side derivations over a service point's queue.

Nothing here is cached: ordering, positions and estimates are recomputed from
the repository on every call, so a read inside a transaction sees that
transaction's writes and a read outside sees committed state only.
"""

import math
from datetime import date, timedelta

from smartqueue.config import Settings
from smartqueue.core.clock import Clock
from smartqueue.models.domain import QueueEstimate, QueueSnapshot, ServicePoint, Token
from smartqueue.repositories.base import QueueRepository, Transaction


class QueueEngine:
    def __init__(self, repository: QueueRepository, clock: Clock, settings: Settings):
        self.repository = repository
        self.clock = clock
        self.settings = settings

    async def waiting_queue(
        self, point_id: int, service_date: date | None = None, *, tx: Transaction | None = None
    ) -> list[Token]:
        """WAITING tokens of the point, highest priority first."""
        service_date = service_date or self.clock.today()
        return await self.repository.list_waiting(point_id, service_date, tx=tx)

    async def head_of_queue(
        self, point_id: int, service_date: date | None = None, *, tx: Transaction | None = None
    ) -> Token | None:
        service_date = service_date or self.clock.today()
        head = await self.repository.list_waiting(point_id, service_date, limit=1, tx=tx)
        return head[0] if head else None

    async def current_serving(
        self, point_id: int, service_date: date | None = None, *, tx: Transaction | None = None
    ) -> Token | None:
        service_date = service_date or self.clock.today()
        return await self.repository.get_current_serving(point_id, service_date, tx=tx)

    async def position(self, token: Token, *, tx: Transaction | None = None) -> int:
        """1-based place in the point's queue; 0 when not waiting or not assigned to a point."""
        if not token.is_waiting or token.point_id is None:
            return 0
        return await self.repository.count_ahead(token, tx=tx) + 1

    async def average_service_minutes(
        self, point: ServicePoint, *, tx: Transaction | None = None
    ) -> float:
        """Mean completed-consultation length over the window, else the nominal duration."""
        since = self.clock.now() - timedelta(days=self.settings.AVERAGE_WINDOW_DAYS)
        average = await self.repository.average_service_minutes(point.id, since, tx=tx)
        if average is None:
            return float(
                point.service_duration_minutes or self.settings.DEFAULT_SERVICE_DURATION_MINUTES
            )
        return average

    @staticmethod
    def wait_for_position(position: int, average_minutes: float) -> int:
        if position <= 1:
            return 0
        return math.floor((position - 1) * average_minutes)

    def estimate_for(self, position: int, average_minutes: float) -> QueueEstimate:
        if position <= 0:
            return QueueEstimate(
                position=0, patients_ahead=0, estimated_wait_minutes=0, estimated_service_time=None
            )
        wait = self.wait_for_position(position, average_minutes)
        return QueueEstimate(
            position=position,
            patients_ahead=position - 1,
            estimated_wait_minutes=wait,
            estimated_service_time=self.clock.now() + timedelta(minutes=wait),
        )

    async def estimate(
        self,
        token: Token,
        point: ServicePoint | None = None,
        *,
        tx: Transaction | None = None,
    ) -> QueueEstimate:
        position = await self.position(token, tx=tx)
        if position == 0:
            return self.estimate_for(0, 0.0)
        if point is None:
            point = await self.repository.get_service_point(token.point_id, tx=tx)
        average = await self.average_service_minutes(point, tx=tx)
        return self.estimate_for(position, average)

    async def estimated_wait_minutes(self, token: Token, *, tx: Transaction | None = None) -> int:
        return (await self.estimate(token, tx=tx)).estimated_wait_minutes

    async def snapshot(
        self,
        point: ServicePoint,
        service_date: date | None = None,
        *,
        tx: Transaction | None = None,
    ) -> QueueSnapshot:
        """Current-serving token plus every waiting token with its estimate."""
        service_date = service_date or self.clock.today()
        current = await self.repository.get_current_serving(point.id, service_date, tx=tx)
        waiting = await self.repository.list_waiting(point.id, service_date, tx=tx)
        average = await self.average_service_minutes(point, tx=tx)

        return QueueSnapshot(
            point=point,
            service_date=service_date,
            current_token=current,
            waiting=[
                (token, self.estimate_for(index, average))
                for index, token in enumerate(waiting, start=1)
            ],
            average_service_minutes=average,
        )
