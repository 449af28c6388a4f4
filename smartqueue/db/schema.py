# smartqueue/db/schema.py
"""
Table definitions for the postgres backend.

The queue index matches the ordering of the waiting list so position and
head-of-queue lookups stay index-only scans.
"""

from smartqueue.db.pool import get_db_transaction
from smartqueue.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS parties (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT NOT NULL UNIQUE,
        email TEXT,
        date_of_birth DATE,
        is_senior BOOLEAN NOT NULL DEFAULT FALSE,
        is_expectant BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_groups (
        id BIGSERIAL PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_points (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        group_id BIGINT NOT NULL REFERENCES service_groups(id),
        room_label TEXT,
        service_duration_minutes INTEGER NOT NULL DEFAULT 15,
        daily_capacity INTEGER NOT NULL DEFAULT 50,
        is_available BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        id BIGSERIAL PRIMARY KEY,
        token_number TEXT NOT NULL,
        party_id BIGINT NOT NULL REFERENCES parties(id),
        group_id BIGINT NOT NULL REFERENCES service_groups(id),
        point_id BIGINT REFERENCES service_points(id),
        service_date DATE NOT NULL,
        priority TEXT NOT NULL,
        priority_score INTEGER NOT NULL,
        skip_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        generated_at TIMESTAMPTZ NOT NULL,
        called_at TIMESTAMPTZ,
        consultation_started_at TIMESTAMPTZ,
        consultation_ended_at TIMESTAMPTZ,
        notes TEXT,
        CONSTRAINT tokens_number_date_key UNIQUE (token_number, service_date)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS tokens_queue_idx
        ON tokens (point_id, service_date, status, priority_score DESC,
                   skip_count ASC, generated_at ASC)
    """,
    """
    CREATE INDEX IF NOT EXISTS tokens_group_date_idx ON tokens (group_id, service_date)
    """,
)


async def ensure_schema() -> None:
    """Create tables and indexes if they do not exist."""
    async with await get_db_transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)

    logger.info("Database schema ensured", statements=len(SCHEMA_STATEMENTS))
