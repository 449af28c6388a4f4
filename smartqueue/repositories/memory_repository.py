"""
In-process implementation of the queue repository.

Committed rows live in plain dicts. A transaction buffers its writes in an
overlay that is merged on commit and dropped on rollback, so readers without
a transaction only ever see committed rows. Rows are copied in and out so
callers never hold a reference into the store.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, date, datetime
from itertools import count

from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import (
    SERVING_STATUSES,
    Party,
    ServiceGroup,
    ServicePoint,
    Token,
    TokenStatus,
)
from smartqueue.repositories.base import (
    DuplicatePhoneError,
    QueueRepository,
    TokenNumberConflictError,
    Transaction,
)

logger = get_logger(__name__)


class _Overlay:
    def __init__(self):
        self.parties: dict[int, Party] = {}
        self.tokens: dict[int, Token] = {}


class InMemoryQueueRepository(QueueRepository):
    """Repository for single-process deployments and tests."""

    def __init__(self):
        self._parties: dict[int, Party] = {}
        self._groups: dict[int, ServiceGroup] = {}
        self._points: dict[int, ServicePoint] = {}
        self._tokens: dict[int, Token] = {}
        self._party_ids = count(1)
        self._group_ids = count(1)
        self._point_ids = count(1)
        self._token_ids = count(1)

    # Administrative seeding; service groups and points are managed outside the core

    def add_service_group(self, code: str, name: str) -> ServiceGroup:
        group = ServiceGroup(id=next(self._group_ids), code=code, name=name)
        self._groups[group.id] = group
        return replace(group)

    def add_service_point(
        self,
        name: str,
        group_id: int,
        *,
        room_label: str | None = None,
        service_duration_minutes: int = 15,
        daily_capacity: int = 50,
        is_available: bool = True,
    ) -> ServicePoint:
        point = ServicePoint(
            id=next(self._point_ids),
            name=name,
            group_id=group_id,
            room_label=room_label,
            service_duration_minutes=service_duration_minutes,
            daily_capacity=daily_capacity,
            is_available=is_available,
        )
        self._points[point.id] = point
        return replace(point)

    def set_point_availability(self, point_id: int, is_available: bool) -> None:
        self._points[point_id].is_available = is_available

    # Transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Transaction, None]:
        tx = Transaction(connection=_Overlay())
        try:
            yield tx
        except BaseException:
            tx.discard_hooks()
            raise
        self._commit(tx.connection)
        await tx.run_commit_hooks()

    def _commit(self, overlay: _Overlay) -> None:
        # Re-check uniqueness against rows committed since the overlay was written
        for token in overlay.tokens.values():
            clash = self._find_number(self._tokens.values(), token)
            if clash is not None and clash.id != token.id:
                raise TokenNumberConflictError(
                    f"Token number {token.token_number} already issued for {token.service_date}",
                    operation="commit",
                )
        for party in overlay.parties.values():
            clash = next(
                (p for p in self._parties.values() if p.phone == party.phone and p.id != party.id),
                None,
            )
            if clash is not None:
                raise DuplicatePhoneError(
                    f"A party with phone {party.phone} already exists", operation="commit"
                )

        self._parties.update(overlay.parties)
        self._tokens.update(overlay.tokens)

    @staticmethod
    def _find_number(tokens, token: Token) -> Token | None:
        return next(
            (
                t
                for t in tokens
                if t.token_number == token.token_number and t.service_date == token.service_date
            ),
            None,
        )

    def _token_view(self, tx: Transaction | None) -> list[Token]:
        if tx is None:
            return list(self._tokens.values())
        merged = dict(self._tokens)
        merged.update(tx.connection.tokens)
        return list(merged.values())

    def _party_view(self, tx: Transaction | None) -> list[Party]:
        if tx is None:
            return list(self._parties.values())
        merged = dict(self._parties)
        merged.update(tx.connection.parties)
        return list(merged.values())

    # Parties

    async def get_party(self, party_id: int, *, tx: Transaction | None = None) -> Party | None:
        party = next((p for p in self._party_view(tx) if p.id == party_id), None)
        return replace(party) if party else None

    async def get_party_by_phone(
        self, phone: str, *, tx: Transaction | None = None
    ) -> Party | None:
        party = next((p for p in self._party_view(tx) if p.phone == phone), None)
        return replace(party) if party else None

    async def create_party(self, party: Party, *, tx: Transaction | None = None) -> Party:
        if any(p.phone == party.phone for p in self._party_view(tx)):
            raise DuplicatePhoneError(
                f"A party with phone {party.phone} already exists", operation="create_party"
            )
        stored = replace(
            party, id=next(self._party_ids), created_at=party.created_at or datetime.now(UTC)
        )
        if tx is None:
            self._parties[stored.id] = stored
        else:
            tx.connection.parties[stored.id] = stored
        logger.info("Party created", party_id=stored.id)
        return replace(stored)

    # Service groups and points

    async def get_service_group(
        self, group_id: int, *, tx: Transaction | None = None
    ) -> ServiceGroup | None:
        group = self._groups.get(group_id)
        return replace(group) if group else None

    async def get_service_point(
        self, point_id: int, *, tx: Transaction | None = None
    ) -> ServicePoint | None:
        point = self._points.get(point_id)
        return replace(point) if point else None

    # Token lookups

    async def get_token(self, token_id: int, *, tx: Transaction | None = None) -> Token | None:
        token = next((t for t in self._token_view(tx) if t.id == token_id), None)
        return replace(token) if token else None

    async def get_token_by_number(
        self, token_number: str, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None:
        token = next(
            (
                t
                for t in self._token_view(tx)
                if t.token_number == token_number and t.service_date == service_date
            ),
            None,
        )
        return replace(token) if token else None

    async def list_party_tokens(
        self, party_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]:
        tokens = [
            t
            for t in self._token_view(tx)
            if t.party_id == party_id and t.service_date == service_date
        ]
        return [replace(t) for t in sorted(tokens, key=lambda t: (t.generated_at, t.id))]

    async def list_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]:
        tokens = self._point_tokens(point_id, service_date, tx)
        return [replace(t) for t in sorted(tokens, key=lambda t: (t.generated_at, t.id))]

    def _point_tokens(
        self, point_id: int, service_date: date, tx: Transaction | None
    ) -> list[Token]:
        return [
            t
            for t in self._token_view(tx)
            if t.point_id == point_id and t.service_date == service_date
        ]

    # Queue queries

    async def list_waiting(
        self,
        point_id: int,
        service_date: date,
        *,
        limit: int | None = None,
        tx: Transaction | None = None,
    ) -> list[Token]:
        waiting = sorted(
            (t for t in self._point_tokens(point_id, service_date, tx) if t.is_waiting),
            key=Token.queue_key,
        )
        if limit is not None:
            waiting = waiting[:limit]
        return [replace(t) for t in waiting]

    async def get_current_serving(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None:
        serving = [
            t
            for t in self._point_tokens(point_id, service_date, tx)
            if t.status in SERVING_STATUSES
        ]
        if not serving:
            return None
        latest = max(serving, key=lambda t: t.called_at or t.generated_at)
        return replace(latest)

    async def count_waiting(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        return sum(1 for t in self._point_tokens(point_id, service_date, tx) if t.is_waiting)

    async def count_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        return len(self._point_tokens(point_id, service_date, tx))

    async def count_group_tokens(
        self, group_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        return sum(
            1
            for t in self._token_view(tx)
            if t.group_id == group_id and t.service_date == service_date
        )

    async def count_ahead(self, token: Token, *, tx: Transaction | None = None) -> int:
        key = token.queue_key()
        return sum(
            1
            for t in self._point_tokens(token.point_id, token.service_date, tx)
            if t.is_waiting and t.id != token.id and t.queue_key() < key
        )

    async def average_service_minutes(
        self, point_id: int, since: datetime, *, tx: Transaction | None = None
    ) -> float | None:
        durations = [
            (t.consultation_ended_at - t.consultation_started_at).total_seconds() / 60.0
            for t in self._token_view(tx)
            if t.point_id == point_id
            and t.status == TokenStatus.COMPLETED
            and t.consultation_started_at is not None
            and t.consultation_ended_at is not None
            and t.consultation_ended_at >= since
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)

    # Writes

    async def insert_token(self, token: Token, *, tx: Transaction | None = None) -> Token:
        if self._find_number(self._token_view(tx), token) is not None:
            raise TokenNumberConflictError(
                f"Token number {token.token_number} already issued for {token.service_date}",
                operation="insert_token",
            )
        stored = replace(token, id=next(self._token_ids))
        if tx is None:
            self._tokens[stored.id] = stored
        else:
            tx.connection.tokens[stored.id] = stored
        return replace(stored)

    async def update_token(self, token: Token, *, tx: Transaction | None = None) -> Token:
        existing = next((t for t in self._token_view(tx) if t.id == token.id), None)
        if existing is None:
            raise KeyError(f"Token {token.id} does not exist")
        stored = replace(existing, **_mutable_fields(token))
        if tx is None:
            self._tokens[stored.id] = stored
        else:
            tx.connection.tokens[stored.id] = stored
        return replace(stored)


def _mutable_fields(token: Token) -> dict:
    return {
        "point_id": token.point_id,
        "priority": token.priority,
        "priority_score": token.priority_score,
        "skip_count": token.skip_count,
        "status": token.status,
        "called_at": token.called_at,
        "consultation_started_at": token.consultation_started_at,
        "consultation_ended_at": token.consultation_ended_at,
        "notes": token.notes,
    }
