"""
Postgres implementation of the queue repository.

Queries follow the tokens_queue_idx column order so waiting-list reads,
position counts and head-of-queue lookups are served from the index.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date, datetime

import psycopg

from smartqueue.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from smartqueue.db.pool import get_db_transaction
from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import (
    Party,
    Priority,
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

QUEUE_ORDER = "priority_score DESC, skip_count ASC, generated_at ASC, id ASC"


def _conn(tx: Transaction | None):
    return tx.connection if tx else None


class PostgresQueueRepository(QueueRepository):
    """Persistence backed by the shared psycopg pool."""

    PARTY_COLUMNS = """
        id, name, phone, email, date_of_birth, is_senior, is_expectant, created_at
    """

    POINT_COLUMNS = """
        id, name, group_id, room_label, service_duration_minutes, daily_capacity, is_available
    """

    TOKEN_COLUMNS = """
        id, token_number, party_id, group_id, point_id, service_date, priority,
        priority_score, skip_count, status, generated_at, called_at,
        consultation_started_at, consultation_ended_at, notes
    """

    @staticmethod
    def _row_to_party(row: dict | None) -> Party | None:
        if not row:
            return None
        return Party(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            email=row.get("email"),
            date_of_birth=row.get("date_of_birth"),
            is_senior=row["is_senior"],
            is_expectant=row["is_expectant"],
            created_at=row.get("created_at"),
        )

    @staticmethod
    def _row_to_point(row: dict | None) -> ServicePoint | None:
        if not row:
            return None
        return ServicePoint(
            id=row["id"],
            name=row["name"],
            group_id=row["group_id"],
            room_label=row.get("room_label"),
            service_duration_minutes=row["service_duration_minutes"],
            daily_capacity=row["daily_capacity"],
            is_available=row["is_available"],
        )

    @staticmethod
    def _row_to_token(row: dict | None) -> Token | None:
        if not row:
            return None
        return Token(
            id=row["id"],
            token_number=row["token_number"],
            party_id=row["party_id"],
            group_id=row["group_id"],
            point_id=row.get("point_id"),
            service_date=row["service_date"],
            priority=Priority(row["priority"]),
            priority_score=row["priority_score"],
            skip_count=row["skip_count"],
            status=TokenStatus(row["status"]),
            generated_at=row["generated_at"],
            called_at=row.get("called_at"),
            consultation_started_at=row.get("consultation_started_at"),
            consultation_ended_at=row.get("consultation_ended_at"),
            notes=row.get("notes"),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Transaction, None]:
        tx = Transaction()
        async with await get_db_transaction() as conn:
            tx.connection = conn
            yield tx
        await tx.run_commit_hooks()

    # Parties

    async def get_party(self, party_id: int, *, tx: Transaction | None = None) -> Party | None:
        query = f"SELECT {self.PARTY_COLUMNS} FROM parties WHERE id = %s"
        return self._row_to_party(await fetch_one(query, (party_id,), connection=_conn(tx)))

    async def get_party_by_phone(
        self, phone: str, *, tx: Transaction | None = None
    ) -> Party | None:
        query = f"SELECT {self.PARTY_COLUMNS} FROM parties WHERE phone = %s"
        return self._row_to_party(await fetch_one(query, (phone,), connection=_conn(tx)))

    async def create_party(self, party: Party, *, tx: Transaction | None = None) -> Party:
        query = f"""
            INSERT INTO parties (name, phone, email, date_of_birth, is_senior, is_expectant)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {self.PARTY_COLUMNS}
        """
        params = (
            party.name,
            party.phone,
            party.email,
            party.date_of_birth,
            party.is_senior,
            party.is_expectant,
        )
        try:
            row = await fetch_one(query, params, connection=_conn(tx))
        except psycopg.errors.UniqueViolation as e:
            raise DuplicatePhoneError(
                f"A party with phone {party.phone} already exists", operation="create_party"
            ) from e

        created = self._row_to_party(row)
        logger.info("Party created", party_id=created.id)
        return created

    # Service groups and points

    async def get_service_group(
        self, group_id: int, *, tx: Transaction | None = None
    ) -> ServiceGroup | None:
        row = await fetch_one(
            "SELECT id, code, name FROM service_groups WHERE id = %s",
            (group_id,),
            connection=_conn(tx),
        )
        return ServiceGroup(id=row["id"], code=row["code"], name=row["name"]) if row else None

    async def get_service_point(
        self, point_id: int, *, tx: Transaction | None = None
    ) -> ServicePoint | None:
        query = f"SELECT {self.POINT_COLUMNS} FROM service_points WHERE id = %s"
        return self._row_to_point(await fetch_one(query, (point_id,), connection=_conn(tx)))

    # Token lookups

    async def get_token(self, token_id: int, *, tx: Transaction | None = None) -> Token | None:
        query = f"SELECT {self.TOKEN_COLUMNS} FROM tokens WHERE id = %s"
        return self._row_to_token(await fetch_one(query, (token_id,), connection=_conn(tx)))

    async def get_token_by_number(
        self, token_number: str, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None:
        query = f"""
            SELECT {self.TOKEN_COLUMNS} FROM tokens
            WHERE token_number = %s AND service_date = %s
        """
        row = await fetch_one(query, (token_number, service_date), connection=_conn(tx))
        return self._row_to_token(row)

    async def list_party_tokens(
        self, party_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]:
        query = f"""
            SELECT {self.TOKEN_COLUMNS} FROM tokens
            WHERE party_id = %s AND service_date = %s
            ORDER BY generated_at ASC
        """
        rows = await fetch_all(query, (party_id, service_date), connection=_conn(tx))
        return [self._row_to_token(row) for row in rows]

    async def list_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> list[Token]:
        query = f"""
            SELECT {self.TOKEN_COLUMNS} FROM tokens
            WHERE point_id = %s AND service_date = %s
            ORDER BY generated_at ASC
        """
        rows = await fetch_all(query, (point_id, service_date), connection=_conn(tx))
        return [self._row_to_token(row) for row in rows]

    # Queue queries

    async def list_waiting(
        self,
        point_id: int,
        service_date: date,
        *,
        limit: int | None = None,
        tx: Transaction | None = None,
    ) -> list[Token]:
        query = f"""
            SELECT {self.TOKEN_COLUMNS} FROM tokens
            WHERE point_id = %s AND service_date = %s AND status = 'WAITING'
            ORDER BY {QUEUE_ORDER}
        """
        params: tuple = (point_id, service_date)
        if limit is not None:
            query += " LIMIT %s"
            params += (limit,)
        rows = await fetch_all(query, params, connection=_conn(tx))
        return [self._row_to_token(row) for row in rows]

    async def get_current_serving(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> Token | None:
        query = f"""
            SELECT {self.TOKEN_COLUMNS} FROM tokens
            WHERE point_id = %s AND service_date = %s
              AND status IN ('CALLED', 'IN_CONSULTATION')
            ORDER BY called_at DESC
            LIMIT 1
        """
        row = await fetch_one(query, (point_id, service_date), connection=_conn(tx))
        return self._row_to_token(row)

    async def count_waiting(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        query = """
            SELECT COUNT(*) FROM tokens
            WHERE point_id = %s AND service_date = %s AND status = 'WAITING'
        """
        return await fetch_val(query, (point_id, service_date), connection=_conn(tx)) or 0

    async def count_point_tokens(
        self, point_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        query = "SELECT COUNT(*) FROM tokens WHERE point_id = %s AND service_date = %s"
        return await fetch_val(query, (point_id, service_date), connection=_conn(tx)) or 0

    async def count_group_tokens(
        self, group_id: int, service_date: date, *, tx: Transaction | None = None
    ) -> int:
        query = "SELECT COUNT(*) FROM tokens WHERE group_id = %s AND service_date = %s"
        return await fetch_val(query, (group_id, service_date), connection=_conn(tx)) or 0

    async def count_ahead(self, token: Token, *, tx: Transaction | None = None) -> int:
        query = """
            SELECT COUNT(*) FROM tokens
            WHERE point_id = %s AND service_date = %s AND status = 'WAITING'
              AND (-priority_score, skip_count, generated_at, id) < (%s, %s, %s, %s)
        """
        params = (
            token.point_id,
            token.service_date,
            -token.priority_score,
            token.skip_count,
            token.generated_at,
            token.id,
        )
        return await fetch_val(query, params, connection=_conn(tx)) or 0

    async def average_service_minutes(
        self, point_id: int, since: datetime, *, tx: Transaction | None = None
    ) -> float | None:
        query = """
            SELECT AVG(EXTRACT(EPOCH FROM (consultation_ended_at - consultation_started_at))) / 60.0
            FROM tokens
            WHERE point_id = %s AND status = 'COMPLETED'
              AND consultation_started_at IS NOT NULL
              AND consultation_ended_at >= %s
        """
        value = await fetch_val(query, (point_id, since), connection=_conn(tx))
        return float(value) if value is not None else None

    # Writes

    async def insert_token(self, token: Token, *, tx: Transaction | None = None) -> Token:
        query = f"""
            INSERT INTO tokens (
                token_number, party_id, group_id, point_id, service_date, priority,
                priority_score, skip_count, status, generated_at, called_at,
                consultation_started_at, consultation_ended_at, notes
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.TOKEN_COLUMNS}
        """
        params = (
            token.token_number,
            token.party_id,
            token.group_id,
            token.point_id,
            token.service_date,
            token.priority.value,
            token.priority_score,
            token.skip_count,
            token.status.value,
            token.generated_at,
            token.called_at,
            token.consultation_started_at,
            token.consultation_ended_at,
            token.notes,
        )
        try:
            row = await fetch_one(query, params, connection=_conn(tx))
        except psycopg.errors.UniqueViolation as e:
            raise TokenNumberConflictError(
                f"Token number {token.token_number} already issued for {token.service_date}",
                operation="insert_token",
            ) from e

        return self._row_to_token(row)

    async def update_token(self, token: Token, *, tx: Transaction | None = None) -> Token:
        query = """
            UPDATE tokens
            SET point_id = %s,
                priority = %s,
                priority_score = %s,
                skip_count = %s,
                status = %s,
                called_at = %s,
                consultation_started_at = %s,
                consultation_ended_at = %s,
                notes = %s
            WHERE id = %s
        """
        params = (
            token.point_id,
            token.priority.value,
            token.priority_score,
            token.skip_count,
            token.status.value,
            token.called_at,
            token.consultation_started_at,
            token.consultation_ended_at,
            token.notes,
            token.id,
        )
        await execute_query(query, params, connection=_conn(tx))
        return token
