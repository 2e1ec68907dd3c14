"""
Working schema for the CRUD and error-generator profiles.

Two related tables: customers and their orders. The sentinel customer always
exists so the error generator can provoke duplicate-key and check-constraint
failures deterministically.
"""

from __future__ import annotations

import logging
from uuid import UUID

from pgstress.connectors.postgres_pool import ConnectionManager

logger = logging.getLogger(__name__)

CUSTOMERS_TABLE = "stress_customers"
ORDERS_TABLE = "stress_orders"

SENTINEL_CUSTOMER_ID = UUID("00000000-0000-4000-8000-000000000001")

BOOTSTRAP_PROFILE = "bootstrap"

SCHEMA_STATEMENTS: tuple[str, ...] = (
    f"""
    CREATE TABLE IF NOT EXISTS {CUSTOMERS_TABLE} (
        id uuid PRIMARY KEY,
        name text NOT NULL,
        email text NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {ORDERS_TABLE} (
        id uuid PRIMARY KEY,
        customer_id uuid NOT NULL REFERENCES {CUSTOMERS_TABLE} (id),
        amount numeric(12, 2) NOT NULL CHECK (amount >= 0),
        status text NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    f"CREATE INDEX IF NOT EXISTS {ORDERS_TABLE}_customer_id_idx ON {ORDERS_TABLE} (customer_id)",
)

SENTINEL_INSERT = (
    f"INSERT INTO {CUSTOMERS_TABLE} (id, name, email) "
    "VALUES ($1, 'sentinel', 'sentinel@pgstress.invalid') ON CONFLICT (id) DO NOTHING"
)


async def ensure_schema(manager: ConnectionManager) -> None:
    """Create the working tables and the sentinel row if they do not exist."""
    async with manager.lease(BOOTSTRAP_PROFILE, reserved=True) as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
            await conn.execute(SENTINEL_INSERT, SENTINEL_CUSTOMER_ID)
    logger.info(f"Working schema ready ({CUSTOMERS_TABLE}, {ORDERS_TABLE})")


async def truncate_working_tables(manager: ConnectionManager) -> None:
    """Remove all generated rows, keeping the sentinel customer."""
    async with manager.lease(BOOTSTRAP_PROFILE, reserved=True) as conn:
        async with conn.transaction():
            await conn.execute(f"TRUNCATE {ORDERS_TABLE}, {CUSTOMERS_TABLE}")
            await conn.execute(SENTINEL_INSERT, SENTINEL_CUSTOMER_ID)
    logger.info("Working tables truncated")
