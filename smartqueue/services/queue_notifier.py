"""
Event-driven queue notifications.

The notifier remembers the last position it observed for every waiting token
and, after each committed mutation, re-reads the affected point's queue,
diffs it against that memory and tells each party whose place changed. The
memory is process-local and best-effort: after a restart the first event
seeds it silently.

Handlers are invoked by the notification dispatcher after commit, one point
at a time in mutation order. Send failures are logged and dropped; they never
reach the operation that triggered them.
"""

import asyncio
from datetime import date
from typing import Any

from smartqueue.config import Settings
from smartqueue.core.priority import REPRIORITIZE_REASON, describe_priority, insertion_reason
from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import MessageKind, Party, Priority, ServicePoint, Token
from smartqueue.repositories.base import QueueRepository
from smartqueue.services.message_sinks import MessageSink
from smartqueue.services.queue_engine import QueueEngine

logger = get_logger(__name__)

ALMOST_YOUR_TURN_POSITION = 3
UNASSIGNED_POINT_NAME = "Unassigned"


class QueueNotifier:
    def __init__(
        self,
        repository: QueueRepository,
        engine: QueueEngine,
        sink: MessageSink,
        settings: Settings,
    ):
        self.repository = repository
        self.engine = engine
        self.sink = sink
        self.settings = settings
        self.positions: dict[int, int] = {}

    # Tracking

    def last_position(self, token_id: int) -> int | None:
        return self.positions.get(token_id)

    def forget(self, token_id: int) -> None:
        self.positions.pop(token_id, None)

    # Event handlers

    async def on_create(self, token: Token, position: int) -> None:
        """Confirm a new token; a priority arrival also pushes others back."""
        if token.point_id is not None and position > 0:
            self.positions[token.id] = position

        group = await self.repository.get_service_group(token.group_id)
        point = await self._point(token.point_id)
        average = await self.engine.average_service_minutes(point) if point else 0.0
        estimate = self.engine.estimate_for(position, average)

        await self._send(
            token,
            MessageKind.CONFIRMATION,
            {
                "token_number": token.token_number,
                "group_name": group.name if group else None,
                "point_name": point.name if point else UNASSIGNED_POINT_NAME,
                "service_date": token.service_date.isoformat(),
                "generated_at": token.generated_at.isoformat(),
                "priority": token.priority.value,
                "position": estimate.position,
                "estimated_wait_minutes": estimate.estimated_wait_minutes,
            },
        )

        if token.priority != Priority.NORMAL and token.point_id is not None:
            await self.on_priority_insertion(token.point_id, token.service_date, token)

    async def on_turn_called(self, token: Token) -> None:
        point = await self._point(token.point_id)
        await self._send(
            token,
            MessageKind.TURN_CALLED,
            {
                "token_number": token.token_number,
                "point_name": point.name if point else UNASSIGNED_POINT_NAME,
                "room_label": point.room_label if point else None,
            },
        )

    async def on_completed(self, token: Token) -> None:
        """Thank the served party, then move everyone behind them up."""
        self.forget(token.id)
        point = await self._point(token.point_id)
        await self._send(
            token,
            MessageKind.COMPLETED,
            {
                "token_number": token.token_number,
                "point_name": point.name if point else UNASSIGNED_POINT_NAME,
                "service_date": token.service_date.isoformat(),
            },
        )
        if token.point_id is not None:
            await self.on_queue_advanced(token.point_id, token.service_date, token.id)

    async def on_queue_advanced(
        self, point_id: int, service_date: date, removed_token_id: int | None = None
    ) -> None:
        """Completion, no-show, skip or cancellation: report anyone who moved up."""
        if removed_token_id is not None:
            self.forget(removed_token_id)

        average, waiting = await self._observe(point_id, service_date)
        for position, token in enumerate(waiting, start=1):
            previous = self.positions.get(token.id)
            self.positions[token.id] = position
            if previous is not None and position < previous:
                await self._send_advancement(token, position, previous, average)

        logger.debug("Queue advancement processed", point_id=point_id, waiting=len(waiting))

    async def on_priority_insertion(
        self, point_id: int, service_date: date, inserted: Token
    ) -> None:
        """A priority token joined: report anyone it pushed back, naming its category."""
        reason = insertion_reason(inserted.priority)
        average, waiting = await self._observe(point_id, service_date)
        for position, token in enumerate(waiting, start=1):
            if token.id == inserted.id:
                continue
            previous = self.positions.get(token.id)
            self.positions[token.id] = position
            if previous is not None and position > previous:
                await self._send_regression(token, position, previous, average, reason)

        logger.debug(
            "Priority insertion processed",
            point_id=point_id,
            inserted=inserted.token_number,
            cause=describe_priority(inserted.priority),
        )

    async def on_reprioritize(self, token: Token) -> None:
        """Queue order changed in place: report moves in both directions."""
        if token.point_id is None:
            return

        average, waiting = await self._observe(token.point_id, token.service_date)
        for position, waiting_token in enumerate(waiting, start=1):
            previous = self.positions.get(waiting_token.id)
            self.positions[waiting_token.id] = position
            if previous is None or previous == position:
                continue
            if position < previous:
                await self._send_advancement(waiting_token, position, previous, average)
            else:
                await self._send_regression(
                    waiting_token, position, previous, average, REPRIORITIZE_REASON
                )

    # Helpers

    async def _point(self, point_id: int | None) -> ServicePoint | None:
        if point_id is None:
            return None
        return await self.repository.get_service_point(point_id)

    async def _observe(
        self, point_id: int, service_date: date
    ) -> tuple[float, list[Token]]:
        point = await self._point(point_id)
        average = await self.engine.average_service_minutes(point) if point else 0.0
        waiting = await self.repository.list_waiting(point_id, service_date)
        return average, waiting

    async def _send_advancement(
        self, token: Token, position: int, previous: int, average: float
    ) -> None:
        await self._send(
            token,
            MessageKind.ADVANCEMENT,
            {
                "token_number": token.token_number,
                "previous_position": previous,
                "position": position,
                "estimated_wait_minutes": self.engine.wait_for_position(position, average),
                "almost_your_turn": position <= ALMOST_YOUR_TURN_POSITION,
            },
        )

    async def _send_regression(
        self, token: Token, position: int, previous: int, average: float, reason: str
    ) -> None:
        await self._send(
            token,
            MessageKind.REGRESSION,
            {
                "token_number": token.token_number,
                "previous_position": previous,
                "position": position,
                "estimated_wait_minutes": self.engine.wait_for_position(position, average),
                "cause_description": reason,
            },
        )

    async def _send(self, token: Token, kind: MessageKind, payload: dict[str, Any]) -> None:
        if not self.settings.EMAIL_ENABLED:
            logger.debug("Messaging disabled, skipping", kind=kind.value, token=token.token_number)
            return

        party: Party | None = await self.repository.get_party(token.party_id)
        if party is None or not party.email:
            logger.debug("No recipient for message", kind=kind.value, token=token.token_number)
            return

        try:
            await asyncio.wait_for(
                self.sink.send(party.email, kind, payload),
                timeout=self.settings.NOTIFIER_SEND_TIMEOUT_S,
            )
            logger.info(
                "Queue message sent",
                kind=kind.value,
                token=token.token_number,
                position=payload.get("position"),
            )
        except TimeoutError:
            logger.error(
                "Queue message timed out",
                kind=kind.value,
                token=token.token_number,
                timeout_s=self.settings.NOTIFIER_SEND_TIMEOUT_S,
            )
        except Exception as e:
            logger.error(
                "Failed to send queue message",
                kind=kind.value,
                token=token.token_number,
                error=str(e),
            )
