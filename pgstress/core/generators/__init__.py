"""
Statement Generators

Tagged-variant registry mapping each workload kind to its generator function.
Workers obtain units through `create_source()` + `next_unit()` and never
dispatch on the kind themselves.
"""

from __future__ import annotations

import random
from typing import Optional

from pgstress.core.generators.base import GeneratorFunction, StatementSource, next_unit
from pgstress.core.generators.connection_bomb import connection_bomb
from pgstress.core.generators.cpu_bomb import cpu_bomb
from pgstress.core.generators.crud import crud
from pgstress.core.generators.error_generator import error_generator
from pgstress.core.generators.memory_test import memory_test
from pgstress.core.generators.slow_query import slow_query
from pgstress.models.profile_config import ProfileConfig, WorkloadKind

GENERATORS: dict[WorkloadKind, GeneratorFunction] = {
    WorkloadKind.CRUD: crud,
    WorkloadKind.SLOW_QUERY: slow_query,
    WorkloadKind.CPU_BOMB: cpu_bomb,
    WorkloadKind.CONNECTION_BOMB: connection_bomb,
    WorkloadKind.ERROR_GENERATOR: error_generator,
    WorkloadKind.MEMORY_TEST: memory_test,
}


def worker_rng(config: ProfileConfig, worker_id: int) -> random.Random:
    """Per-worker RNG; reproducible when the profile has a seed."""
    if config.seed is None:
        return random.Random()
    return random.Random(config.seed * 1_000_003 + worker_id)


def create_source(
    config: ProfileConfig,
    *,
    worker_id: int = 0,
    rng: Optional[random.Random] = None,
) -> StatementSource:
    """Create one worker's statement source for `config.kind`."""
    factory = GENERATORS[WorkloadKind(config.kind)]
    return factory(config, rng if rng is not None else worker_rng(config, worker_id))


__all__ = [
    "GENERATORS",
    "StatementSource",
    "create_source",
    "next_unit",
    "worker_rng",
]
