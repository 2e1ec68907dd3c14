"""Wait-dominated queries: a cheap read wrapped around a server-side sleep."""

from __future__ import annotations

import random

from pgstress.core.generators.base import StatementSource
from pgstress.core.schema import CUSTOMERS_TABLE
from pgstress.models.outcome import StatementUnit
from pgstress.models.profile_config import ProfileConfig, SlowQueryIntensity

SLOW_QUERY_SQL = (
    f"SELECT count(*) AS customers FROM {CUSTOMERS_TABLE} CROSS JOIN pg_sleep($1::float8)"
)


def draw_sleep_seconds(params: SlowQueryIntensity, rng: random.Random) -> float:
    """Draw one sleep duration from the configured distribution."""
    if params.distribution == "fixed":
        return params.sleep_seconds
    if params.distribution == "uniform":
        return rng.uniform(params.min_sleep_seconds, params.max_sleep_seconds)
    # exponential: mean sleep_seconds, clipped into [min, max]
    value = rng.expovariate(1.0 / params.sleep_seconds)
    return min(params.max_sleep_seconds, max(params.min_sleep_seconds, value))


def slow_query(config: ProfileConfig, rng: random.Random) -> StatementSource:
    params: SlowQueryIntensity = config.intensity
    label = f"slow_query.{params.distribution}"
    while True:
        seconds = round(draw_sleep_seconds(params, rng), 3)
        yield StatementUnit(sql=SLOW_QUERY_SQL, args=(seconds,), label=label, fetch=True)
