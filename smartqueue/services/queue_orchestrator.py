"""
Public operations of the queue core.

Each mutating operation takes the logical lock of the service point it
touches, runs one repository transaction and, once that transaction has
committed, hands the matching notifier handler to the dispatcher. Errors
raised inside the transaction roll it back and reach the caller unchanged;
notifier failures never do.
"""

from collections.abc import Awaitable, Callable
from datetime import date

from smartqueue.config import Settings
from smartqueue.core.clock import Clock
from smartqueue.core.errors import (
    AlreadyServingError,
    CapacityExceededError,
    ContentionError,
    EmptyQueueError,
    InvalidPriorityError,
    NotFoundError,
    ServicePointUnavailableError,
)
from smartqueue.core.priority import PriorityScale, parse_priority
from smartqueue.infrastructure.observability.logging import get_logger, operation_context
from smartqueue.models.domain import (
    Party,
    Priority,
    QueueEstimate,
    QueueSnapshot,
    ServiceGroup,
    ServicePoint,
    Token,
)
from smartqueue.repositories.base import QueueRepository, TokenNumberConflictError, Transaction
from smartqueue.services.locks import QueueLocks, group_lock_key, point_lock_key
from smartqueue.services.notification_dispatcher import NotificationDispatcher
from smartqueue.services.queue_engine import QueueEngine
from smartqueue.services.queue_notifier import QueueNotifier
from smartqueue.services.token_state_machine import TokenStateMachine

logger = get_logger(__name__)

# One retry after a numbering collision, then give up
MAX_NUMBERING_ATTEMPTS = 2


def format_token_number(group_code: str, service_date: date, sequence: int) -> str:
    return f"{group_code}-{service_date:%Y%m%d}-{sequence:04d}"


def event_key(token: Token) -> str:
    """Dispatcher key: per point and date, or per group for unassigned tokens."""
    if token.point_id is not None:
        return f"point:{token.point_id}:{token.service_date.isoformat()}"
    return f"group:{token.group_id}:{token.service_date.isoformat()}"


def token_lock_key(token: Token) -> str:
    if token.point_id is not None:
        return point_lock_key(token.point_id, token.service_date)
    return group_lock_key(token.group_id, token.service_date)


class QueueOrchestrator:
    def __init__(
        self,
        repository: QueueRepository,
        engine: QueueEngine,
        state_machine: TokenStateMachine,
        notifier: QueueNotifier,
        dispatcher: NotificationDispatcher,
        locks: QueueLocks,
        clock: Clock,
        scale: PriorityScale,
        settings: Settings,
    ):
        self.repository = repository
        self.engine = engine
        self.state_machine = state_machine
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.locks = locks
        self.clock = clock
        self.scale = scale
        self.settings = settings

    # Lookups that raise NotFound

    async def _require_party(self, party_id: int, tx: Transaction | None = None) -> Party:
        party = await self.repository.get_party(party_id, tx=tx)
        if party is None:
            raise NotFoundError.for_entity("Party", "id", party_id)
        return party

    async def _require_group(self, group_id: int) -> ServiceGroup:
        group = await self.repository.get_service_group(group_id)
        if group is None:
            raise NotFoundError.for_entity("Service group", "id", group_id)
        return group

    async def _require_point(self, point_id: int) -> ServicePoint:
        point = await self.repository.get_service_point(point_id)
        if point is None:
            raise NotFoundError.for_entity("Service point", "id", point_id)
        return point

    async def _require_token(self, token_id: int, tx: Transaction | None = None) -> Token:
        token = await self.repository.get_token(token_id, tx=tx)
        if token is None:
            raise NotFoundError.for_entity("Token", "id", token_id)
        return token

    def _after_commit(
        self,
        tx: Transaction,
        token: Token,
        event: str,
        handler: Callable[[], Awaitable[None]],
    ) -> None:
        key = event_key(token)
        tx.on_commit(lambda: self.dispatcher.dispatch(key, event, handler))

    # Token generation

    async def generate(
        self,
        party_id: int,
        group_id: int | None = None,
        point_id: int | None = None,
        priority: Priority | str | None = None,
        notes: str | None = None,
    ) -> Token:
        """Issue a new WAITING token for today."""
        with operation_context("generate", party_id=party_id, point_id=point_id):
            return await self._generate(party_id, group_id, point_id, priority, notes)

    async def _generate(
        self,
        party_id: int,
        group_id: int | None,
        point_id: int | None,
        priority: Priority | str | None,
        notes: str | None,
    ) -> Token:
        requested = parse_priority(priority)
        party = await self._require_party(party_id)

        point = await self._require_point(point_id) if point_id is not None else None
        if point is not None:
            if group_id is not None and point.group_id != group_id:
                raise NotFoundError(
                    f"Service point {point.id} not found in service group {group_id}",
                    operation="generate",
                )
            group_id = point.group_id
            if not point.is_available:
                raise ServicePointUnavailableError(
                    f"Service point {point.name} is not accepting new tokens",
                    operation="generate",
                )
        if group_id is None:
            raise NotFoundError(
                "A service group or service point is required", operation="generate"
            )
        group = await self._require_group(group_id)

        service_date = self.clock.today()
        resolved = self.scale.resolve(
            party, requested, service_date, self.settings.SENIOR_AGE_THRESHOLD
        )

        lock_keys = [group_lock_key(group.id, service_date)]
        if point is not None:
            lock_keys.append(point_lock_key(point.id, service_date))

        for attempt in range(1, MAX_NUMBERING_ATTEMPTS + 1):
            try:
                async with self.locks.hold(*lock_keys):
                    async with self.repository.transaction() as tx:
                        token = await self._issue(
                            tx, party, group, point, service_date, resolved, notes
                        )
            except TokenNumberConflictError:
                logger.warning(
                    "Token number collision, retrying",
                    group_code=group.code,
                    service_date=service_date.isoformat(),
                    attempt=attempt,
                )
                continue

            logger.info(
                "Token generated",
                token_number=token.token_number,
                party_id=party.id,
                point_id=token.point_id,
                priority=token.priority.value,
            )
            return token

        raise ContentionError(
            f"Could not allocate a token number for {group.code} on {service_date.isoformat()}",
            operation="generate",
        )

    async def _issue(
        self,
        tx: Transaction,
        party: Party,
        group: ServiceGroup,
        point: ServicePoint | None,
        service_date: date,
        priority: Priority,
        notes: str | None,
    ) -> Token:
        if point is not None:
            issued = await self.repository.count_point_tokens(point.id, service_date, tx=tx)
            if issued >= point.daily_capacity:
                raise CapacityExceededError(
                    f"Service point {point.name} has reached its daily capacity "
                    f"of {point.daily_capacity}",
                    operation="generate",
                )

        sequence = await self.repository.count_group_tokens(group.id, service_date, tx=tx) + 1
        token = self.state_machine.create(
            token_number=format_token_number(group.code, service_date, sequence),
            party_id=party.id,
            group_id=group.id,
            point_id=point.id if point else None,
            service_date=service_date,
            priority=priority,
            notes=notes,
        )
        token = await self.repository.insert_token(token, tx=tx)
        position = await self.engine.position(token, tx=tx)

        self._after_commit(tx, token, "create", lambda: self.notifier.on_create(token, position))
        return token

    # Serving

    async def call_next(self, point_id: int) -> Token:
        """Call the head of the point's queue; the point must be idle."""
        with operation_context("call_next", point_id=point_id):
            point = await self._require_point(point_id)
            service_date = self.clock.today()

            async with self.locks.hold(point_lock_key(point.id, service_date)):
                async with self.repository.transaction() as tx:
                    current = await self.repository.get_current_serving(
                        point.id, service_date, tx=tx
                    )
                    if current is not None:
                        raise AlreadyServingError(
                            f"Service point {point.name} is already serving "
                            f"{current.token_number}",
                            operation="call_next",
                        )

                    head = await self.engine.head_of_queue(point.id, service_date, tx=tx)
                    if head is None:
                        raise EmptyQueueError(
                            f"No waiting tokens for service point {point.name}",
                            operation="call_next",
                        )

                    token = self.state_machine.call(head)
                    token = await self.repository.update_token(token, tx=tx)
                    self._after_commit(
                        tx, token, "turn_called", lambda: self.notifier.on_turn_called(token)
                    )

            logger.info("Token called", token_number=token.token_number)
            return token

    async def _transition(
        self,
        token_id: int,
        operation: str,
        mutate: Callable[[Token], Token],
        on_committed: Callable[[Token], Awaitable[None]] | None = None,
    ) -> Token:
        with operation_context(operation, token_id=token_id):
            token = await self._require_token(token_id)
            async with self.locks.hold(token_lock_key(token)):
                async with self.repository.transaction() as tx:
                    # Re-read under the lock; another operation may have moved it meanwhile
                    token = mutate(await self._require_token(token_id, tx=tx))
                    token = await self.repository.update_token(token, tx=tx)
                    if on_committed is not None:
                        self._after_commit(tx, token, operation, lambda: on_committed(token))

            logger.info(
                "Token updated",
                token_number=token.token_number,
                point_id=token.point_id,
                status=token.status.value,
            )
            return token

    async def start_service(self, token_id: int) -> Token:
        return await self._transition(token_id, "start_service", self.state_machine.start_service)

    async def end_service(self, token_id: int) -> Token:
        return await self._transition(
            token_id, "end_service", self.state_machine.end_service, self.notifier.on_completed
        )

    async def mark_no_show(self, token_id: int) -> Token:
        return await self._transition(
            token_id, "no_show", self.state_machine.mark_no_show, self._advance_after_removal
        )

    async def skip(self, token_id: int) -> Token:
        return await self._transition(
            token_id, "skip", self.state_machine.skip, self._advance_after_skip
        )

    async def cancel(self, token_id: int) -> Token:
        return await self._transition(
            token_id, "cancel", self.state_machine.cancel, self._advance_after_removal
        )

    async def abort_active(self, token_id: int) -> Token:
        """Cancel a called or in-progress token. The party is not messaged."""
        return await self._transition(
            token_id, "abort", self.state_machine.abort_active, self._forget
        )

    async def reprioritize(self, token_id: int, priority: Priority | str | None) -> Token:
        new_priority = parse_priority(priority)
        if new_priority is None:
            raise InvalidPriorityError("A priority is required", operation="reprioritize")

        return await self._transition(
            token_id,
            "reprioritize",
            lambda token: self.state_machine.reprioritize(token, new_priority),
            self.notifier.on_reprioritize,
        )

    # Notifier adapters for the transitions above

    async def _advance_after_removal(self, token: Token) -> None:
        if token.point_id is None:
            self.notifier.forget(token.id)
            return
        await self.notifier.on_queue_advanced(token.point_id, token.service_date, token.id)

    async def _advance_after_skip(self, token: Token) -> None:
        await self.notifier.on_queue_advanced(token.point_id, token.service_date)

    async def _forget(self, token: Token) -> None:
        self.notifier.forget(token.id)

    # Queries

    async def get_token(self, token_id: int) -> Token:
        return await self._require_token(token_id)

    async def get_token_by_number(
        self, token_number: str, service_date: date | None = None
    ) -> Token:
        service_date = service_date or self.clock.today()
        token = await self.repository.get_token_by_number(token_number, service_date)
        if token is None:
            raise NotFoundError.for_entity("Token", "number", token_number)
        return token

    async def list_party_tokens(
        self, party_id: int, service_date: date | None = None
    ) -> list[Token]:
        await self._require_party(party_id)
        return await self.repository.list_party_tokens(
            party_id, service_date or self.clock.today()
        )

    async def position(self, token_id: int) -> QueueEstimate:
        token = await self._require_token(token_id)
        return await self.engine.estimate(token)

    async def waiting_queue(
        self, point_id: int, service_date: date | None = None
    ) -> list[Token]:
        point = await self._require_point(point_id)
        return await self.engine.waiting_queue(point.id, service_date)

    async def current_serving(
        self, point_id: int, service_date: date | None = None
    ) -> Token | None:
        point = await self._require_point(point_id)
        return await self.engine.current_serving(point.id, service_date)

    async def queue_snapshot(
        self, point_id: int, service_date: date | None = None
    ) -> QueueSnapshot:
        point = await self._require_point(point_id)
        return await self.engine.snapshot(point, service_date)
