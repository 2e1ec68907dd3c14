"""Shared contract for statement generators.

A generator function takes the profile configuration and a private RNG and
returns a Python generator. Each worker drives its own instance: it sends the
Outcome of the previous unit and receives the next StatementUnit.
"""

from __future__ import annotations

import random
from typing import Callable, Generator, Optional

from pgstress.models.outcome import Outcome, StatementUnit
from pgstress.models.profile_config import ProfileConfig

StatementSource = Generator[StatementUnit, Optional[Outcome], None]
GeneratorFunction = Callable[[ProfileConfig, random.Random], StatementSource]


def next_unit(source: StatementSource, outcome: Optional[Outcome] = None) -> StatementUnit:
    """Hand the previous unit's outcome back and return the next unit.

    The first call for a fresh source must pass `outcome=None`.
    """
    return source.send(outcome)
