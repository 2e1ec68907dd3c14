"""Worker pool for one profile.

Spawns the profile's workers as asyncio tasks, stops them cooperatively
through the profile's cancellation token, and cancels stragglers once the
shutdown timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from pgstress.connectors.postgres_pool import ConnectionManager
from pgstress.core.backoff import Backoff
from pgstress.core.cancellation import CancellationToken
from pgstress.core.worker import Worker, WorkerCounters, WorkerState
from pgstress.models.profile_config import ProfileConfig

logger = logging.getLogger(__name__)

BackoffFactory = Callable[[], Backoff]


class WorkerPool:
    """Manages the async worker tasks of one profile.

    Attributes:
        profile: Configuration shared by every worker
        token: Profile cancellation token handed to every worker
    """

    def __init__(
        self,
        *,
        profile: ProfileConfig,
        manager: ConnectionManager,
        token: CancellationToken,
        backoff_factory: Optional[BackoffFactory] = None,
    ) -> None:
        self.profile = profile
        self.manager = manager
        self.token = token
        self._backoff_factory = backoff_factory or Backoff
        self._workers: dict[int, tuple[Worker, asyncio.Task[None]]] = {}
        self._seen_error_categories: set[str] = set()
        self._next_worker_id = 0

    @property
    def count(self) -> int:
        """Current number of live (not done) workers."""
        return len(self.live_worker_ids())

    def live_worker_ids(self) -> list[int]:
        return [wid for wid, (_, task) in self._workers.items() if not task.done()]

    def workers(self) -> list[Worker]:
        return [worker for worker, _ in self._workers.values()]

    def worker_states(self) -> dict[int, WorkerState]:
        return {wid: worker.state for wid, (worker, _) in self._workers.items()}

    def counters(self) -> list[WorkerCounters]:
        return [worker.counters for worker, _ in self._workers.values()]

    def spawn_one(self) -> int:
        """Spawn a single new worker and return its id."""
        wid = int(self._next_worker_id)
        self._next_worker_id += 1
        worker = Worker(
            worker_id=wid,
            profile=self.profile,
            manager=self.manager,
            token=self.token,
            backoff=self._backoff_factory(),
            seen_error_categories=self._seen_error_categories,
        )
        task = asyncio.create_task(worker.run(), name=f"pgstress:{worker.name}")
        self._workers[wid] = (worker, task)
        return wid

    def spawn(self, count: int) -> list[int]:
        return [self.spawn_one() for _ in range(max(0, int(count)))]

    async def stop_all(self, *, timeout_seconds: float) -> int:
        """Stop all workers.

        Cancels the profile token, waits up to `timeout_seconds` for workers
        to exit on their own, then force-cancels the rest.

        Returns:
            Number of workers that had to be force-cancelled
        """
        self.token.cancel()
        tasks = [task for _, task in self._workers.values() if not task.done()]
        if not tasks:
            return 0

        _, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_seconds))
        if not pending:
            return 0

        logger.warning(
            f"[{self.profile.name}] {len(pending)} worker(s) still running "
            f"after {timeout_seconds:.1f}s; cancelling"
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for worker, _ in self._workers.values():
            worker.finish()
        return len(pending)
