"""Compute-dominated queries.

Everything is generated in-memory from `generate_series`, so there is no
table I/O and no large intermediate state: the time goes to evaluating
expressions. Kept separate from the slow-query profile so wait-time and
compute-bound bottlenecks look different to the observer.
"""

from __future__ import annotations

import random

from pgstress.core.generators.base import StatementSource
from pgstress.models.outcome import StatementUnit
from pgstress.models.profile_config import CpuBombIntensity, ProfileConfig

CPU_AGGREGATE_SQL = """
    SELECT sum(sqrt(g::float8) * ln(g::float8 + 1) * sin(g::float8))
    FROM generate_series(1, $1::bigint) AS g
"""

CPU_HASH_SQL = """
    SELECT max(md5(md5(g::text) || g::text))
    FROM generate_series(1, $1::bigint) AS g
"""

CPU_RECURSIVE_SQL = """
    WITH RECURSIVE r(n, x) AS (
        SELECT 1, 1::float8
        UNION ALL
        SELECT n + 1, sqrt(x * x + n) + cbrt(n::float8)
        FROM r
        WHERE n < $1
    )
    SELECT max(x) FROM r
"""


def cpu_bomb(config: ProfileConfig, rng: random.Random) -> StatementSource:
    params: CpuBombIntensity = config.intensity
    while True:
        variant = rng.choice(params.variants)
        if variant == "aggregate":
            unit = StatementUnit(
                sql=CPU_AGGREGATE_SQL,
                args=(params.series_size,),
                label="cpu_bomb.aggregate",
                fetch=True,
            )
        elif variant == "hash":
            unit = StatementUnit(
                sql=CPU_HASH_SQL,
                args=(params.series_size,),
                label="cpu_bomb.hash",
                fetch=True,
            )
        else:
            unit = StatementUnit(
                sql=CPU_RECURSIVE_SQL,
                args=(params.recursion_depth,),
                label="cpu_bomb.recursive",
                fetch=True,
            )
        yield unit
