"""Connection exhaustion.

Each worker leaks leases (keeps them after its statement completes) until it
holds `connections_per_worker` of them or the profile's ceiling refuses the
next one. It then sits on them for `hold_seconds` and releases them all at
once, so the observer sees exhaustion followed by recovery, repeatedly.
"""

from __future__ import annotations

import random

from pgstress.core.generators.base import StatementSource
from pgstress.models.outcome import StatementUnit
from pgstress.models.profile_config import ConnectionBombIntensity, ProfileConfig

LEAK_SQL = "SELECT pg_backend_pid()"
# Simple-query protocol: leaves the session "idle in transaction".
LEAK_IN_TRANSACTION_SQL = "BEGIN; SELECT pg_backend_pid()"


def connection_bomb(config: ProfileConfig, rng: random.Random) -> StatementSource:
    params: ConnectionBombIntensity = config.intensity
    if params.idle_in_transaction:
        leak = StatementUnit(
            sql=LEAK_IN_TRANSACTION_SQL,
            label="connection_bomb.leak",
            retain_lease=True,
        )
    else:
        leak = StatementUnit(
            sql=LEAK_SQL,
            label="connection_bomb.leak",
            fetch=True,
            retain_lease=True,
        )
    release = StatementUnit(
        sql="",
        label="connection_bomb.release",
        requires_lease=False,
        release_held=True,
        hold_seconds=params.hold_seconds,
    )

    while True:
        held = 0
        while held < params.connections_per_worker:
            outcome = yield leak
            if outcome is None:
                continue
            if outcome.ok:
                held += 1
            elif outcome.error_category == "POOL_EXHAUSTED":
                # Ceiling reached: hold what we have.
                break
        yield release
