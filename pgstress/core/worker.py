"""
Worker execution engine.

A Worker belongs to one profile and drives one statement generator in a loop:
take the next unit, lease a connection, execute with the per-statement
timeout, classify the outcome, return the lease, hand the outcome back to the
generator, pace, repeat. Infrastructure failures back off exponentially;
application errors never do.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pgstress.connectors.postgres_pool import ConnectionManager, Lease
from pgstress.core.backoff import Backoff
from pgstress.core.cancellation import CancellationToken
from pgstress.core.errors import (
    HarnessError,
    InducedApplicationError,
    SchemaViolation,
    StatementTimeout,
    classify_sql_error,
    is_constraint_violation,
)
from pgstress.core.generators import StatementSource, create_source, next_unit
from pgstress.core.log_context import bind_worker
from pgstress.models.outcome import Outcome, OutcomeKind, StatementUnit
from pgstress.models.profile_config import ProfileConfig

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class WorkerCounters:
    """Per-worker outcome counters, aggregated by the controller."""

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
    current_backoff: float = 0.0
    last_error: Optional[str] = None
    last_error_category: Optional[str] = None
    error_categories: Counter[str] = field(default_factory=Counter)

    def record(self, unit: StatementUnit, outcome: Outcome) -> None:
        self.attempts += 1
        self.total_elapsed_ms += outcome.elapsed_ms
        if unit.expect_error and not outcome.is_infrastructure:
            self.induced_attempts += 1

        if outcome.ok:
            self.successes += 1
            self.rows += outcome.rowcount or 0
            if unit.expect_error:
                self.induced_misses += 1
            return

        category = outcome.error_category or "UNKNOWN"
        self.error_categories[category] += 1

        if outcome.induced:
            # The statement failed the way it was built to fail.
            self.induced_errors += 1
            return

        self.failures += 1
        self.last_error = _error_text(outcome.error)
        self.last_error_category = category
        if outcome.is_infrastructure:
            self.infrastructure_errors += 1
            if category == "TIMEOUT":
                self.timeouts += 1
            elif category == "POOL_EXHAUSTED":
                self.pool_exhausted += 1
        else:
            self.application_errors += 1
            if isinstance(outcome.error, SchemaViolation):
                self.schema_violations += 1

    @property
    def completed(self) -> int:
        """Attempts that reached the server."""
        return self.attempts - self.infrastructure_errors

    @property
    def induced_error_ratio(self) -> float:
        """Observed fraction of completed statements that failed as intended."""
        if self.completed <= 0:
            return 0.0
        return self.induced_errors / self.completed

    def snapshot(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "application_errors": self.application_errors,
            "infrastructure_errors": self.infrastructure_errors,
            "induced_attempts": self.induced_attempts,
            "induced_errors": self.induced_errors,
            "induced_misses": self.induced_misses,
            "schema_violations": self.schema_violations,
            "timeouts": self.timeouts,
            "pool_exhausted": self.pool_exhausted,
            "rows": self.rows,
            "total_elapsed_ms": self.total_elapsed_ms,
            "current_backoff": self.current_backoff,
            "last_error": self.last_error,
            "last_error_category": self.last_error_category,
            "error_categories": dict(self.error_categories),
        }


class Worker:
    """One concurrent actor of a profile."""

    def __init__(
        self,
        *,
        worker_id: int,
        profile: ProfileConfig,
        manager: ConnectionManager,
        token: CancellationToken,
        backoff: Optional[Backoff] = None,
        source: Optional[StatementSource] = None,
        seen_error_categories: Optional[set[str]] = None,
    ) -> None:
        """
        Initialize a worker.

        Args:
            worker_id: Index of the worker inside its profile
            profile: Configuration of the owning profile
            manager: Shared connection manager
            token: Profile cancellation token
            backoff: Backoff policy for infrastructure failures
            source: Statement generator (defaults to one built for the profile's kind)
            seen_error_categories: Categories already logged at warning level,
                shared by the workers of one profile
        """
        self.worker_id = int(worker_id)
        self.profile = profile
        self.manager = manager
        self.token = token
        self.backoff = backoff or Backoff()
        self.source = source or create_source(profile, worker_id=self.worker_id)
        self.counters = WorkerCounters()
        self._seen_categories = (
            seen_error_categories if seen_error_categories is not None else set()
        )
        self._held: list[Lease] = []
        self._state = WorkerState.IDLE

    @property
    def name(self) -> str:
        return f"{self.profile.name}-{self.worker_id}"

    @property
    def state(self) -> WorkerState:
        if self._state == WorkerState.RUNNING and self.token.cancelled:
            return WorkerState.STOPPING
        return self._state

    @property
    def held_leases(self) -> int:
        return len(self._held)

    async def run(self) -> None:
        """Run until the cancellation token fires."""
        if self._state != WorkerState.IDLE:
            raise HarnessError(f"worker {self.name} already ran ({self._state.value})")
        bind_worker(self.profile.name, self.worker_id)
        self._state = WorkerState.RUNNING
        logger.debug(f"Worker {self.name} started")

        outcome: Optional[Outcome] = None
        try:
            while not self.token.cancelled:
                started = time.monotonic()
                try:
                    unit = next_unit(self.source, outcome)
                except StopIteration:
                    logger.info(f"Worker {self.name}: generator exhausted")
                    break

                outcome = await self._execute(unit)
                self.counters.record(unit, outcome)
                self._log_outcome(unit, outcome)

                if outcome.is_infrastructure:
                    delay = self.backoff.next_delay()
                    self.counters.current_backoff = delay
                    if await self.token.sleep(delay):
                        break
                    continue

                self.backoff.reset()
                self.counters.current_backoff = 0.0
                if await self.token.sleep(self._pace_delay(started)):
                    break
        except asyncio.CancelledError:
            logger.debug(f"Worker {self.name} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Worker {self.name} failed: {e}")
            self.counters.last_error = _error_text(e)
            self.counters.last_error_category = type(e).__name__
        finally:
            self.finish()

    def finish(self) -> None:
        """Return held connections and mark the worker stopped.

        Also used for workers cancelled before their task ever ran.
        """
        if self._state == WorkerState.STOPPED:
            return
        self._release_held()
        self.source.close()
        self._state = WorkerState.STOPPED
        logger.debug(f"Worker {self.name} stopped ({self.counters.attempts} attempts)")

    # ------------------------------------------------------------------
    # One unit of work
    # ------------------------------------------------------------------

    async def _execute(self, unit: StatementUnit) -> Outcome:
        start = time.perf_counter()

        if unit.hold_seconds > 0:
            await self.token.sleep(unit.hold_seconds)
        if unit.release_held:
            self._release_held()
        if not unit.requires_lease:
            return Outcome(
                kind=OutcomeKind.SUCCESS,
                label=unit.label,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
            )

        try:
            lease = await self.manager.acquire(
                self.profile.name,
                reserved=self.profile.use_reserved_headroom,
                owner=self.name,
            )
        except HarnessError as e:
            kind, category = classify_sql_error(e)
            return Outcome(
                kind=kind,
                label=unit.label,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
                error=e,
                error_category=category,
            )

        try:
            outcome = await self._run_statement(lease, unit, start)
        except asyncio.CancelledError:
            # The statement may still be running server-side.
            self.manager.invalidate(lease)
            raise

        if outcome.is_infrastructure:
            self.manager.invalidate(lease)
        elif unit.retain_lease and outcome.ok:
            self._held.append(lease)
        else:
            self.manager.release(lease)
        return outcome

    async def _run_statement(
        self, lease: Lease, unit: StatementUnit, start: float
    ) -> Outcome:
        conn = lease.connection
        timeout = self.profile.statement_timeout_seconds
        try:
            if unit.fetch:
                records = await conn.fetch(unit.sql, *unit.args, timeout=timeout)
                rows = [tuple(r) for r in records]
                rowcount: Optional[int] = len(rows)
            else:
                status = await conn.execute(unit.sql, *unit.args, timeout=timeout)
                rows = []
                rowcount = _rowcount_from_status(status)
        except asyncio.TimeoutError:
            err = StatementTimeout(
                f"{unit.label or 'statement'} exceeded {timeout}s"
            )
            return Outcome(
                kind=OutcomeKind.INFRASTRUCTURE_ERROR,
                label=unit.label,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
                error=err,
                error_category="TIMEOUT",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind, category = classify_sql_error(e)
            error: BaseException = e
            induced = False
            if kind == OutcomeKind.APPLICATION_ERROR:
                if unit.expect_error:
                    induced = True
                    error = InducedApplicationError(
                        f"{unit.error_kind or 'invalid'} statement failed as intended: {e}",
                        error_kind=unit.error_kind,
                        cause=e,
                    )
                elif is_constraint_violation(e):
                    error = SchemaViolation(
                        f"unexpected constraint violation on {unit.label or 'statement'}: {e}",
                        cause=e,
                    )
            return Outcome(
                kind=kind,
                label=unit.label,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
                error=error,
                error_category=category,
                induced=induced,
            )

        return Outcome(
            kind=OutcomeKind.SUCCESS,
            label=unit.label,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
            rowcount=rowcount,
            rows=rows,
        )

    def _release_held(self) -> None:
        held, self._held = self._held, []
        for lease in held:
            if lease.active:
                self.manager.release(lease)
        if held:
            logger.debug(f"Worker {self.name} released {len(held)} held connection(s)")

    def _pace_delay(self, started: float) -> float:
        delay = self.profile.pacing_ms / 1000.0
        if self.profile.target_rate:
            interval = 1.0 / self.profile.target_rate
            delay = max(delay, interval - (time.monotonic() - started))
        return max(0.0, delay)

    def _log_outcome(self, unit: StatementUnit, outcome: Outcome) -> None:
        if outcome.ok:
            if unit.expect_error:
                logger.warning(
                    f"Induced {unit.error_kind} statement unexpectedly succeeded ({unit.label})"
                )
            return
        category = outcome.error_category or "UNKNOWN"
        if outcome.induced:
            logger.debug(f"Induced error {category} ({unit.label})")
            return

        # Errors are expected under load: warn once per category, then debug.
        message = (
            f"{outcome.kind.value} {category} on {unit.label or 'statement'}: "
            f"{_error_text(outcome.error)}"
        )
        if category not in self._seen_categories:
            self._seen_categories.add(category)
            logger.warning(message)
        else:
            logger.debug(message)


def _rowcount_from_status(status: Any) -> Optional[int]:
    """Parse the row count from a command tag such as 'INSERT 0 1' or 'UPDATE 3'."""
    if not status:
        return None
    tail = str(status).rsplit(" ", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return None


def _error_text(exc: Optional[BaseException], *, max_chars: int = 300) -> Optional[str]:
    if exc is None:
        return None
    text = f"{type(exc).__name__}: {exc}"
    if len(text) > max_chars:
        return text[:max_chars] + "…[truncated]"
    return text
