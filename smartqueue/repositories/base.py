"""
Repository contract consumed by the queue core.

Every method takes an optional ``tx`` handle. Reads without a handle see
committed data only; reads and writes with a handle run inside that
transaction. Callbacks registered with ``tx.on_commit`` run after a
successful commit and are discarded on rollback.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Any

from smartqueue.db.helpers import DatabaseError
from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import Party, ServiceGroup, ServicePoint, Token

logger = get_logger(__name__)

CommitCallback = Callable[[], Awaitable[None] | None]


class TokenNumberConflictError(DatabaseError):
    """Another transaction already stored this (token_number, service_date)."""


class DuplicatePhoneError(DatabaseError):
    """A party with this phone number already exists."""


class Transaction:
    """Handle for one unit of work."""

    def __init__(self, connection: Any = None):
        self.connection = connection
        self._callbacks: list[CommitCallback] = []

    def on_commit(self, callback: CommitCallback) -> None:
        self._callbacks.append(callback)

    async def run_commit_hooks(self) -> None:
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                result = callback()
                if result is not None:
                    await result
            except Exception:
                # Committed state is already durable; a failing hook must not undo it
                logger.exception("After-commit hook failed")

    def discard_hooks(self) -> None:
        self._callbacks = []


class QueueRepository(ABC):
    """Persistence for parties, service groups, service points and tokens."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]: ...

    # Parties

    @abstractmethod
    async def get_party(self, party_id: int, *, tx: Transaction | None = None) -> Party | None: ...

    @abstractmethod
    async def get_party_by_phone(
        self, phone: str, *, tx: Transaction | None = None
    ) -> Party | None: ...

    @abstractmethod
    async def create_party(self, party: Party, *, tx: Transaction | None = None) -> Party: ...

    # Service groups and points

    @abstractmethod
    async def get_service_group(
        self, group_id: int, *, tx: Transaction | None = None
    ) -> ServiceGroup | None: ...

    @abstractmethod
    async def get_service_point(
        self, point_id: int, *, tx: Transaction | None = None
    ) -> ServicePoint | None: ...

    # Token lookups

    @abstractmethod
    async def get_token(self, token_id: int, *, tx: Transaction | None = None) -> Token | None: ...

    @abstractmethod
    async def get_token_by_number(
        self, token_number: str, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None: ...

    @abstractmethod
    async def list_party_tokens(
        self, party_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]: ...

    @abstractmethod
    async def list_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]: ...

    # Queue queries

    @abstractmethod
    async def list_waiting(
        self,
        point_id: int,
        service_date: date,
        *,
        limit: int | None = None,
        tx: Transaction | None = None,
    ) -> list[Token]:
        """WAITING tokens in queue order."""

    @abstractmethod
    async def get_current_serving(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None: ...

    @abstractmethod
    async def count_waiting(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int: ...

    @abstractmethod
    async def count_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int: ...

    @abstractmethod
    async def count_group_tokens(
        self, group_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int: ...

    @abstractmethod
    async def count_ahead(self, token: Token, *, tx: Transaction | None = None) -> int:
        """WAITING tokens of the same point and date that sort before ``token``."""

    @abstractmethod
    async def average_service_minutes(
        self, point_id: int, since: datetime, *, tx: Transaction | None = None
    ) -> float | None:
        """Mean consultation length of tokens completed since ``since``."""

    # Writes

    @abstractmethod
    async def insert_token(self, token: Token, *, tx: Transaction | None = None) -> Token:
        """Store a new token; raises TokenNumberConflictError on a duplicate number."""

    @abstractmethod
    async def update_token(self, token: Token, *, tx: Transaction | None = None) -> Token: ...

