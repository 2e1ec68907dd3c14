"""
Scenario Controller

Starts, stops and supervises registered profiles independently of each
other. Each profile moves through registered -> active -> draining ->
stopped; a stopped profile may be activated again. Shutdown cancels the
process-wide token and drains every profile in parallel, force-cancelling
workers that outlive the shutdown timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Union

from pgstress.connectors.postgres_pool import ConnectionManager
from pgstress.core.cancellation import CancellationToken
from pgstress.core.errors import ConfigurationError, HarnessError, InvalidTransition
from pgstress.core.profile_registry import ProfileHandle, ProfileRegistry
from pgstress.core.stats import ProfileStats, StatsReporter
from pgstress.core.worker import WorkerCounters, WorkerState
from pgstress.core.worker_pool import BackoffFactory, WorkerPool

logger = logging.getLogger(__name__)


class ProfileState(str, Enum):
    REGISTERED = "registered"
    ACTIVE = "active"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class _ProfileRun:
    handle: ProfileHandle
    state: ProfileState = ProfileState.REGISTERED
    token: Optional[CancellationToken] = None
    pool: Optional[WorkerPool] = None
    drain_task: Optional[asyncio.Task[None]] = None
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    forced_cancellations: int = 0
    # Counters of earlier activations, so stats survive re-activation.
    history: list[WorkerCounters] = field(default_factory=list)


ProfileRef = Union[ProfileHandle, str]


class ScenarioController:
    """Lifecycle owner for every profile of one harness process."""

    def __init__(
        self,
        *,
        registry: ProfileRegistry,
        manager: ConnectionManager,
        root_token: Optional[CancellationToken] = None,
        shutdown_timeout: float = 15.0,
        backoff_factory: Optional[BackoffFactory] = None,
    ) -> None:
        """
        Args:
            registry: Source of profile handles
            manager: Connection manager shared by every profile
            root_token: Process-wide cancellation token
            shutdown_timeout: Seconds workers get to stop before being cancelled
            backoff_factory: Builds one backoff policy per worker
        """
        self.registry = registry
        self.manager = manager
        self.root_token = root_token or CancellationToken(name="root")
        self.shutdown_timeout = float(shutdown_timeout)
        self._backoff_factory = backoff_factory
        self._runs: dict[str, _ProfileRun] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _run_for(self, ref: ProfileRef) -> _ProfileRun:
        name = ref.name if isinstance(ref, ProfileHandle) else str(ref)
        run = self._runs.get(name)
        if run is None:
            handle = self.registry.get(name)
            run = _ProfileRun(handle=handle)
            self._runs[name] = run
        return run

    def state(self, ref: ProfileRef) -> ProfileState:
        return self._run_for(ref).state

    def worker_states(self, ref: ProfileRef) -> dict[int, WorkerState]:
        run = self._run_for(ref)
        return run.pool.worker_states() if run.pool is not None else {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def activate(self, ref: ProfileRef) -> None:
        """
        Spawn the profile's worker pool.

        Raises:
            InvalidTransition: The profile is active/draining, or shutdown began
            ConfigurationError: The profile cannot run against this manager
        """
        run = self._run_for(ref)
        name = run.handle.name
        if self.root_token.cancelled:
            raise InvalidTransition(f"cannot activate '{name}': shutdown in progress")
        if run.state not in (ProfileState.REGISTERED, ProfileState.STOPPED):
            raise InvalidTransition(
                f"cannot activate '{name}' from state {run.state.value}"
            )

        config = run.handle.config
        self._check_compatible(run.handle)

        if run.pool is not None:
            run.history.extend(run.pool.counters())
        self.manager.set_profile_limit(name, config.connection_ceiling)
        run.token = self.root_token.child(name)
        pool_kwargs: dict[str, Any] = {}
        if self._backoff_factory is not None:
            pool_kwargs["backoff_factory"] = self._backoff_factory
        run.pool = WorkerPool(
            profile=config, manager=self.manager, token=run.token, **pool_kwargs
        )
        run.started_at = time.monotonic()
        run.stopped_at = None
        run.forced_cancellations = 0
        run.drain_task = None
        run.state = ProfileState.ACTIVE
        run.pool.spawn(config.concurrency)
        logger.info(
            f"Activated profile '{name}' ({config.kind.value}, "
            f"{config.concurrency} worker(s), ceiling={config.connection_ceiling})"
        )

    def _check_compatible(self, handle: ProfileHandle) -> None:
        config = handle.config
        limit = config.max_connections
        if limit is None:
            return
        bound = (
            self.manager.max_connections
            if config.use_reserved_headroom
            else self.manager.stress_capacity
        )
        if limit > bound:
            raise ConfigurationError(
                f"profile '{handle.name}': max_connections={limit} exceeds what the "
                f"connection manager can grant ({bound})"
            )

    async def activate_all(
        self, refs: Optional[Iterable[ProfileRef]] = None
    ) -> dict[str, HarnessError]:
        """Activate several profiles; one profile's failure does not stop the others.

        Returns:
            Errors keyed by profile name (empty when all activated)
        """
        failures: dict[str, HarnessError] = {}
        targets = list(refs) if refs is not None else self.registry.list()
        for ref in targets:
            name = ref.name if isinstance(ref, ProfileHandle) else str(ref)
            try:
                await self.activate(ref)
            except (ConfigurationError, InvalidTransition) as e:
                logger.error(f"Profile '{name}' not activated: {e}")
                failures[name] = e
        return failures

    async def deactivate(
        self, ref: ProfileRef, *, timeout: Optional[float] = None
    ) -> ProfileStats:
        """
        Drain the profile: stop its workers, cancelling any that exceed `timeout`.

        Deactivating a stopped profile is a no-op; deactivating one that is
        already draining waits for that drain.

        Raises:
            InvalidTransition: The profile was never activated
        """
        run = self._run_for(ref)
        if run.state == ProfileState.REGISTERED:
            raise InvalidTransition(
                f"cannot deactivate '{run.handle.name}': it was never activated"
            )
        if run.state == ProfileState.ACTIVE:
            run.state = ProfileState.DRAINING
            wait = self.shutdown_timeout if timeout is None else float(timeout)
            run.drain_task = asyncio.create_task(
                self._drain(run, wait), name=f"pgstress:drain:{run.handle.name}"
            )
        if run.drain_task is not None:
            await asyncio.shield(run.drain_task)
        return self.stats(ref)

    async def _drain(self, run: _ProfileRun, timeout: float) -> None:
        name = run.handle.name
        logger.info(f"Draining profile '{name}' (timeout {timeout:.1f}s)")
        try:
            if run.pool is not None:
                run.forced_cancellations = await run.pool.stop_all(timeout_seconds=timeout)
        finally:
            if run.token is not None:
                run.token.cancel()
                run.token.detach()
            self.manager.set_profile_limit(name, None)
            run.stopped_at = time.monotonic()
            run.state = ProfileState.STOPPED
        stats = self.stats(name)
        logger.info(f"Stopped profile '{name}': {stats.summary_line()}")
        if run.forced_cancellations:
            logger.warning(
                f"Profile '{name}': {run.forced_cancellations} worker(s) force-cancelled"
            )

    async def shutdown(self, *, timeout: Optional[float] = None) -> None:
        """Cancel every profile and wait for all of them to stop."""
        self.root_token.cancel()
        draining = [
            run
            for run in self._runs.values()
            if run.state in (ProfileState.ACTIVE, ProfileState.DRAINING)
        ]
        if not draining:
            return
        logger.info(f"Shutting down {len(draining)} profile(s)")
        results = await asyncio.gather(
            *(self.deactivate(run.handle, timeout=timeout) for run in draining),
            return_exceptions=True,
        )
        for run, result in zip(draining, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Profile '{run.handle.name}' did not shut down cleanly: {result}"
                )

    async def run(
        self,
        duration: Optional[float] = None,
        *,
        stats_interval: float = 0.0,
    ) -> dict[str, Any]:
        """
        Let active profiles run for `duration` seconds (or until the root
        token is cancelled), then shut down.

        Returns:
            Final snapshot
        """
        reporter = StatsReporter(self.snapshot, interval_seconds=stats_interval)
        reporter.start()
        try:
            if duration is None:
                await self.root_token.wait()
            else:
                await self.root_token.sleep(duration)
        finally:
            await reporter.stop()
            await self.shutdown()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self, ref: ProfileRef) -> ProfileStats:
        run = self._run_for(ref)
        counters = list(run.history)
        if run.pool is not None:
            counters.extend(run.pool.counters())
        stats = ProfileStats.aggregate(
            run.handle.name,
            counters,
            state=run.state.value,
            started_at=run.started_at,
            stopped_at=run.stopped_at,
        )
        if run.pool is not None:
            stats.workers = run.pool.count
        return stats

    def snapshot(self) -> dict[str, Any]:
        profiles = {h.name: self.stats(h) for h in self.registry.list()}
        return {"profiles": profiles, "pool": self.manager.stats()}
