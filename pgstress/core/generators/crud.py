"""
Steady CRUD churn.

Each worker owns its own slice of the working set: it only ever references
rows it inserted itself and saw committed. A row whose fate is uncertain
(its delete did not report success) is dropped from tracking together with
everything that references it, so no statement ever points at a row that
might not exist.
"""

from __future__ import annotations

import random
from decimal import Decimal
from uuid import UUID, uuid4

from pgstress.core.generators.base import StatementSource
from pgstress.core.schema import CUSTOMERS_TABLE, ORDERS_TABLE
from pgstress.models.outcome import Outcome, StatementUnit
from pgstress.models.profile_config import CrudIntensity, ProfileConfig

CRUD_CYCLE: tuple[str, ...] = (
    "insert_customer",
    "insert_order",
    "select",
    "insert_order",
    "update",
    "delete",
)

ORDER_STATUSES: tuple[str, ...] = ("new", "paid", "shipped", "delivered", "returned")

INSERT_CUSTOMER_SQL = f"INSERT INTO {CUSTOMERS_TABLE} (id, name, email) VALUES ($1, $2, $3)"
INSERT_ORDER_SQL = (
    f"INSERT INTO {ORDERS_TABLE} (id, customer_id, amount, status) VALUES ($1, $2, $3, $4)"
)
SELECT_SQL = f"""
    SELECT c.id, c.name, count(o.id) AS order_count, coalesce(sum(o.amount), 0) AS total
    FROM {CUSTOMERS_TABLE} c
    LEFT JOIN {ORDERS_TABLE} o ON o.customer_id = c.id
    WHERE c.id = ANY($1::uuid[])
    GROUP BY c.id, c.name
    LIMIT $2
"""
UPDATE_ORDER_SQL = (
    f"UPDATE {ORDERS_TABLE} SET status = $2, amount = amount + $3, updated_at = now() "
    "WHERE id = $1"
)
UPDATE_CUSTOMER_SQL = (
    f"UPDATE {CUSTOMERS_TABLE} SET email = $2, updated_at = now() WHERE id = $1"
)
DELETE_ORDER_SQL = f"DELETE FROM {ORDERS_TABLE} WHERE id = $1"
DELETE_CUSTOMER_SQL = f"DELETE FROM {CUSTOMERS_TABLE} WHERE id = $1"


class CrudWorkingSet:
    """Rows one worker has created and confirmed."""

    def __init__(self) -> None:
        self.customers: dict[UUID, set[UUID]] = {}
        self.orders: dict[UUID, UUID] = {}

    @property
    def size(self) -> int:
        return len(self.customers) + len(self.orders)

    def add_customer(self, customer_id: UUID) -> None:
        self.customers[customer_id] = set()

    def add_order(self, order_id: UUID, customer_id: UUID) -> None:
        self.customers[customer_id].add(order_id)
        self.orders[order_id] = customer_id

    def drop_order(self, order_id: UUID) -> None:
        customer_id = self.orders.pop(order_id, None)
        if customer_id is not None and customer_id in self.customers:
            self.customers[customer_id].discard(order_id)

    def drop_customer(self, customer_id: UUID) -> None:
        for order_id in self.customers.pop(customer_id, set()):
            self.orders.pop(order_id, None)


def _amount(rng: random.Random, low: float, high: float) -> Decimal:
    return Decimal(f"{rng.uniform(low, high):.2f}")


def crud(config: ProfileConfig, rng: random.Random) -> StatementSource:
    params: CrudIntensity = config.intensity
    rows = CrudWorkingSet()
    step = 0

    while True:
        op = CRUD_CYCLE[step % len(CRUD_CYCLE)]
        step += 1

        if rows.size >= params.max_rows_per_worker:
            op = "delete"
        if not rows.customers:
            op = "insert_customer"

        if op == "insert_order":
            open_customers = [
                cid
                for cid, orders in rows.customers.items()
                if len(orders) < params.orders_per_customer
            ]
            if not open_customers:
                op = "insert_customer"

        if op == "insert_customer":
            customer_id = uuid4()
            outcome: Outcome | None = yield StatementUnit(
                sql=INSERT_CUSTOMER_SQL,
                args=(customer_id, f"customer-{customer_id.hex[:8]}", f"{customer_id.hex[:12]}@pgstress.test"),
                label="crud.insert_customer",
            )
            if outcome is not None and outcome.ok:
                rows.add_customer(customer_id)

        elif op == "insert_order":
            customer_id = rng.choice(open_customers)
            order_id = uuid4()
            outcome = yield StatementUnit(
                sql=INSERT_ORDER_SQL,
                args=(order_id, customer_id, _amount(rng, 1, 500), rng.choice(ORDER_STATUSES)),
                label="crud.insert_order",
            )
            if outcome is not None and outcome.ok:
                rows.add_order(order_id, customer_id)
            else:
                # The order may have committed anyway; an untracked child
                # would block deleting this customer later.
                rows.drop_customer(customer_id)

        elif op == "select":
            sample_size = min(len(rows.customers), params.select_limit)
            sample = rng.sample(list(rows.customers), sample_size)
            yield StatementUnit(
                sql=SELECT_SQL,
                args=(sample, params.select_limit),
                label="crud.select",
                fetch=True,
            )

        elif op == "update":
            if rows.orders and rng.random() < 0.5:
                order_id = rng.choice(list(rows.orders))
                yield StatementUnit(
                    sql=UPDATE_ORDER_SQL,
                    args=(order_id, rng.choice(ORDER_STATUSES), _amount(rng, 0, 10)),
                    label="crud.update_order",
                )
            else:
                customer_id = rng.choice(list(rows.customers))
                yield StatementUnit(
                    sql=UPDATE_CUSTOMER_SQL,
                    args=(customer_id, f"{uuid4().hex[:12]}@pgstress.test"),
                    label="crud.update_customer",
                )

        else:
            if rows.orders:
                order_id = rng.choice(list(rows.orders))
                customer_id = rows.orders[order_id]
                outcome = yield StatementUnit(
                    sql=DELETE_ORDER_SQL,
                    args=(order_id,),
                    label="crud.delete_order",
                )
                if outcome is not None and outcome.ok:
                    rows.drop_order(order_id)
                else:
                    # The order may or may not still exist; its customer can
                    # no longer be deleted safely, so stop tracking both.
                    rows.drop_customer(customer_id)
            else:
                customer_id = rng.choice(list(rows.customers))
                yield StatementUnit(
                    sql=DELETE_CUSTOMER_SQL,
                    args=(customer_id,),
                    label="crud.delete_customer",
                )
                rows.drop_customer(customer_id)
