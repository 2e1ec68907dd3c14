"""
Per-profile stats aggregation and periodic reporting.

Worker counters are summed into one ProfileStats per profile. The reporter
logs a one-line summary per active profile plus the connection manager's
occupancy on a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from pgstress.core.worker import WorkerCounters

logger = logging.getLogger(__name__)

_SUMMED_FIELDS = (
    "attempts",
    "successes",
    "failures",
    "application_errors",
    "infrastructure_errors",
    "induced_attempts",
    "induced_errors",
    "induced_misses",
    "schema_violations",
    "timeouts",
    "pool_exhausted",
    "rows",
)


@dataclass
class ProfileStats:
    """Aggregated counters of one profile's workers."""

    profile: str
    state: str = "registered"
    workers: int = 0
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    application_errors: int = 0
    infrastructure_errors: int = 0
    induced_attempts: int = 0
    induced_errors: int = 0
    induced_misses: int = 0
    schema_violations: int = 0
    timeouts: int = 0
    pool_exhausted: int = 0
    rows: int = 0
    total_elapsed_ms: float = 0.0
    max_backoff: float = 0.0
    last_error: Optional[str] = None
    error_categories: Counter[str] = field(default_factory=Counter)
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None

    @classmethod
    def aggregate(
        cls,
        profile: str,
        counters: Iterable[WorkerCounters],
        *,
        state: str = "registered",
        started_at: Optional[float] = None,
        stopped_at: Optional[float] = None,
    ) -> ProfileStats:
        stats = cls(
            profile=profile, state=state, started_at=started_at, stopped_at=stopped_at
        )
        for c in counters:
            stats.workers += 1
            for name in _SUMMED_FIELDS:
                setattr(stats, name, getattr(stats, name) + getattr(c, name))
            stats.total_elapsed_ms += c.total_elapsed_ms
            stats.max_backoff = max(stats.max_backoff, c.current_backoff)
            stats.error_categories.update(c.error_categories)
            if c.last_error:
                stats.last_error = c.last_error
        return stats

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.stopped_at if self.stopped_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    @property
    def ops_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.attempts / elapsed

    @property
    def avg_latency_ms(self) -> float:
        if self.attempts <= 0:
            return 0.0
        return self.total_elapsed_ms / self.attempts

    @property
    def induced_error_ratio(self) -> float:
        """Observed fraction of statements reaching the server that failed as intended."""
        completed = self.attempts - self.infrastructure_errors
        if completed <= 0:
            return 0.0
        return self.induced_errors / completed

    def summary_line(self) -> str:
        line = (
            f"[{self.profile}] {self.state}: workers={self.workers} "
            f"ops={self.attempts} ok={self.successes} failed={self.failures} "
            f"infra={self.infrastructure_errors} ops/s={self.ops_per_second:.1f} "
            f"avg={self.avg_latency_ms:.1f}ms"
        )
        if self.induced_attempts:
            line += (
                f" induced={self.induced_errors}/{self.induced_attempts} "
                f"ratio={self.induced_error_ratio:.3f}"
            )
        if self.schema_violations:
            line += f" schema_violations={self.schema_violations}"
        if self.max_backoff:
            line += f" backoff={self.max_backoff:.2f}s"
        return line


SnapshotFn = Callable[[], dict[str, Any]]


class StatsReporter:
    """Logs a snapshot every `interval_seconds` until stopped."""

    def __init__(self, snapshot: SnapshotFn, *, interval_seconds: float = 10.0) -> None:
        self._snapshot = snapshot
        self.interval_seconds = float(interval_seconds)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="pgstress:stats")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        try:
            await self._task
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            self.log_once()

    def log_once(self) -> None:
        snapshot = self._snapshot()
        for entry in snapshot.get("profiles", {}).values():
            if isinstance(entry, ProfileStats) and entry.state in ("active", "draining"):
                logger.info(entry.summary_line())
        pool = snapshot.get("pool") or {}
        if pool:
            logger.info(
                "[pool] open=%s leased=%s idle=%s peak=%s by_profile=%s",
                pool.get("open"),
                pool.get("leased"),
                pool.get("idle"),
                pool.get("peak_leased"),
                pool.get("leased_by_profile"),
            )

