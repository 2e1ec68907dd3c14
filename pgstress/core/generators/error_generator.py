"""Malformed-statement injection at a target ratio.

Each unit is invalid with probability `error_ratio`. Invalid units carry
`expect_error=True` so workers can count an induced error as intended and
flag an induced statement that unexpectedly succeeded.
"""

from __future__ import annotations

import random
from decimal import Decimal
from uuid import uuid4

from pgstress.core.generators.base import StatementSource
from pgstress.core.schema import CUSTOMERS_TABLE, ORDERS_TABLE, SENTINEL_CUSTOMER_ID
from pgstress.models.outcome import StatementUnit
from pgstress.models.profile_config import (
    ErrorGeneratorIntensity,
    ErrorKind,
    ProfileConfig,
)

VALID_SQL = f"SELECT count(*) FROM {CUSTOMERS_TABLE} WHERE id = $1"


def _invalid_unit(kind: ErrorKind, rng: random.Random) -> StatementUnit:
    label = f"error_generator.{kind.value}"
    if kind == ErrorKind.SYNTAX:
        sql = rng.choice(
            (
                f"SELEC id FROM {CUSTOMERS_TABLE}",
                f"SELECT id FROM {CUSTOMERS_TABLE} WHERE",
                f"INSERT INTO {CUSTOMERS_TABLE} VALUES (",
            )
        )
        return StatementUnit(sql=sql, label=label, expect_error=True, error_kind=kind.value)

    if kind == ErrorKind.TYPE_MISMATCH:
        sql = rng.choice(
            (
                "SELECT 'not-a-number'::integer",
                f"SELECT id FROM {CUSTOMERS_TABLE} WHERE id = 'not-a-uuid'",
                "SELECT now() + 'forty days'::interval",
            )
        )
        return StatementUnit(sql=sql, label=label, expect_error=True, error_kind=kind.value)

    if kind == ErrorKind.CONSTRAINT:
        variant = rng.randrange(3)
        if variant == 0:
            # Duplicate primary key: the sentinel always exists.
            sql = f"INSERT INTO {CUSTOMERS_TABLE} (id, name, email) VALUES ($1, 'dup', 'dup@pgstress.test')"
            args: tuple = (SENTINEL_CUSTOMER_ID,)
        elif variant == 1:
            # Foreign key to a customer that was never created.
            sql = f"INSERT INTO {ORDERS_TABLE} (id, customer_id, amount, status) VALUES ($1, $2, 1, 'new')"
            args = (uuid4(), uuid4())
        else:
            # CHECK (amount >= 0) against the sentinel customer.
            sql = f"INSERT INTO {ORDERS_TABLE} (id, customer_id, amount, status) VALUES ($1, $2, $3, 'new')"
            args = (uuid4(), SENTINEL_CUSTOMER_ID, Decimal("-1.00"))
        return StatementUnit(
            sql=sql, args=args, label=label, expect_error=True, error_kind=kind.value
        )

    if kind == ErrorKind.UNDEFINED_OBJECT:
        sql = rng.choice(
            (
                "SELECT * FROM stress_missing_table",
                f"SELECT missing_column FROM {CUSTOMERS_TABLE}",
                "SELECT pgstress_missing_function(1)",
            )
        )
        return StatementUnit(sql=sql, label=label, expect_error=True, error_kind=kind.value)

    return StatementUnit(
        sql=f"SELECT count(*) / 0 FROM {CUSTOMERS_TABLE}",
        label=label,
        expect_error=True,
        error_kind=ErrorKind.DIVISION_BY_ZERO.value,
    )


def error_generator(config: ProfileConfig, rng: random.Random) -> StatementSource:
    params: ErrorGeneratorIntensity = config.intensity
    kinds = [ErrorKind(k) for k in params.error_kinds]
    valid = StatementUnit(
        sql=VALID_SQL,
        args=(SENTINEL_CUSTOMER_ID,),
        label="error_generator.valid",
        fetch=True,
    )
    while True:
        if rng.random() < params.error_ratio:
            yield _invalid_unit(rng.choice(kinds), rng)
        else:
            yield valid
