"""Shared fakes: in-memory stand-ins for asyncpg connections."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import pytest

from pgstress.connectors.postgres_pool import ConnectionManager

# (connection, sql, args) -> result; return None to fall through to the default.
Handler = Callable[["FakeConnection", str, tuple], Awaitable[Any]]


class _FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    async def __aenter__(self):
        self._conn.in_transaction = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._conn.in_transaction = False
        return False


class FakeConnection:
    def __init__(self, profile: str, *, handler: Optional[Handler] = None) -> None:
        self.profile = profile
        self.handler = handler
        self.closed = False
        self.terminated = False
        self.in_transaction = False
        self.calls: list[tuple[str, tuple]] = []

    def is_closed(self) -> bool:
        return self.closed

    def is_in_transaction(self) -> bool:
        return self.in_transaction

    def terminate(self) -> None:
        self.closed = True
        self.terminated = True

    async def close(self, timeout: Optional[float] = None) -> None:
        self.closed = True

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    async def _dispatch(self, sql: str, args: tuple, timeout: Optional[float]) -> Any:
        if self.closed:
            raise ConnectionResetError("connection is closed")
        self.calls.append((sql, args))
        if sql.lstrip().upper().startswith("BEGIN"):
            self.in_transaction = True
        if self.handler is None:
            return None
        if timeout is None:
            return await self.handler(self, sql, args)
        return await asyncio.wait_for(self.handler(self, sql, args), timeout)

    async def execute(self, sql: str, *args: Any, timeout: Optional[float] = None) -> str:
        result = await self._dispatch(sql, args, timeout)
        return result if result is not None else "SELECT 1"

    async def fetch(self, sql: str, *args: Any, timeout: Optional[float] = None) -> list:
        result = await self._dispatch(sql, args, timeout)
        return result if result is not None else [(1,)]

    async def fetchrow(self, sql: str, *args: Any, timeout: Optional[float] = None):
        result = await self._dispatch(sql, args, timeout)
        return result

    async def fetchval(self, sql: str, *args: Any, timeout: Optional[float] = None):
        result = await self._dispatch(sql, args, timeout)
        return result if result is not None else 0


class FakeConnector:
    """Connect factory handing out FakeConnections."""

    def __init__(
        self,
        *,
        handler: Optional[Handler] = None,
        fail_with: Optional[BaseException] = None,
        delay: float = 0.0,
    ) -> None:
        self.handler = handler
        self.fail_with = fail_with
        self.delay = delay
        self.connections: list[FakeConnection] = []

    async def __call__(self, profile: str) -> FakeConnection:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        conn = FakeConnection(profile, handler=self.handler)
        self.connections.append(conn)
        return conn

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if not c.closed]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def make_manager():
    def _make(connector: Optional[FakeConnector] = None, **kwargs: Any) -> ConnectionManager:
        kwargs.setdefault("max_connections", 10)
        kwargs.setdefault("reserved_headroom", 2)
        return ConnectionManager(connect=connector or FakeConnector(), **kwargs)

    return _make
