"""
Per-worker log context.

Workers run as asyncio tasks; each task sets the contextvars below once at
start, and the filter stamps every log record emitted from that task with the
profile and worker it belongs to. Records emitted outside a worker get "-".
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Optional

CURRENT_PROFILE: ContextVar[Optional[str]] = ContextVar("CURRENT_PROFILE", default=None)
CURRENT_WORKER_ID: ContextVar[Optional[str]] = ContextVar(
    "CURRENT_WORKER_ID", default=None
)


def bind_worker(profile: str, worker_id: int | str) -> None:
    """Bind the running task's log context to a profile/worker."""
    CURRENT_PROFILE.set(str(profile))
    CURRENT_WORKER_ID.set(str(worker_id))


class WorkerContextFilter(logging.Filter):
    """Logging filter that adds `profile` and `worker_id` attributes to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        profile = getattr(record, "profile", None)
        if profile is None:
            profile = CURRENT_PROFILE.get()
        worker_id = getattr(record, "worker_id", None)
        if worker_id is None:
            worker_id = CURRENT_WORKER_ID.get()
        record.profile = str(profile).strip() if profile else "-"
        record.worker_id = str(worker_id).strip() if worker_id is not None else "-"
        return True
