"""Cooperative cancellation tokens.

The process owns one root token; each activated profile gets a child of it,
and every worker of that profile receives the child at creation. Cancelling
a parent cancels all of its children; cancelling a child leaves the parent
and its siblings untouched.
"""

from __future__ import annotations

import asyncio


class CancellationToken:
    """A one-way stop signal observed by workers between blocking operations."""

    def __init__(self, *, name: str = "root", parent: CancellationToken | None = None) -> None:
        self.name = name
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self._parent = parent
        if parent is not None and parent.cancelled:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for child in list(self._children):
            child.cancel()

    def child(self, name: str) -> CancellationToken:
        """Create a token cancelled together with this one."""
        token = CancellationToken(name=name, parent=self)
        self._children.append(token)
        return token

    def detach(self) -> None:
        """Drop this token from its parent's children (after its profile stops)."""
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass
            self._parent = None

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancellation.

        Returns:
            True if the token was cancelled before or during the sleep.
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            # Still yield so a busy worker lets other tasks run.
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
