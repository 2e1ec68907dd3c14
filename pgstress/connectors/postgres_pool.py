"""
Postgres Connection Manager

Owns every connection the harness opens and hands them out as leases.
Enforces a global ceiling, optional per-profile ceilings, and a reserved
headroom that stress profiles can never use.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import ssl as ssl_module
import time
from collections import Counter, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import asyncpg

from pgstress.core.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectError,
    LeaseError,
    PoolExhausted,
    is_auth_failure,
)

logger = logging.getLogger(__name__)

# Signature: (profile name) -> new driver connection
ConnectFactory = Callable[[str], Awaitable[Any]]


class LeaseState(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    INVALIDATED = "invalidated"


@dataclass(eq=False)
class Lease:
    """A borrowed connection, owned by one worker for one unit of work."""

    lease_id: int
    profile: str
    connection: Any
    reserved: bool
    owner: Optional[str] = None
    acquired_at: float = field(default_factory=time.monotonic)
    state: LeaseState = LeaseState.ACTIVE

    @property
    def active(self) -> bool:
        return self.state == LeaseState.ACTIVE


def make_asyncpg_connect(
    *,
    host: str,
    port: int,
    database: str,
    user: str,
    password: str,
    connect_timeout: float = 10.0,
    ssl: bool | ssl_module.SSLContext | None = None,
    application_name_prefix: str = "pgstress",
) -> ConnectFactory:
    """Build a connect factory for asyncpg.

    Each connection reports `application_name` as `<prefix>:<profile>` so the
    instrumentation surface (pg_stat_activity) can tell profiles apart.
    """

    async def _connect(profile: str) -> asyncpg.Connection:
        return await asyncpg.connect(
            host=host,
            port=port,
            database=database,
            user=user,
            password=password,
            timeout=connect_timeout,
            ssl=ssl,
            server_settings={"application_name": f"{application_name_prefix}:{profile}"[:63]},
        )

    return _connect


class ConnectionManager:
    """
    Lease-based connection manager shared by every profile.

    Counting happens in code paths that never yield to the event loop, and
    slots are reserved before a connect is awaited, so the ceilings hold
    exactly under any interleaving of workers.
    """

    def __init__(
        self,
        *,
        connect: ConnectFactory,
        max_connections: int = 50,
        reserved_headroom: int = 2,
        acquire_timeout: float = 0.0,
        pool_name: str = "load",
    ):
        """
        Initialize the connection manager.

        Args:
            connect: Async factory opening one connection for a profile
            max_connections: Hard ceiling on open + connecting connections
            reserved_headroom: Slots stress acquisitions may never use
            acquire_timeout: Seconds acquire waits for capacity (0 = fail fast)
            pool_name: Descriptive name for logging
        """
        if max_connections < 1:
            raise ConfigurationError("max_connections must be >= 1")
        if not 0 <= reserved_headroom < max_connections:
            raise ConfigurationError(
                "reserved_headroom must be >= 0 and < max_connections "
                f"(got {reserved_headroom} of {max_connections})"
            )
        self._connect = connect
        self.max_connections = int(max_connections)
        self.reserved_headroom = int(reserved_headroom)
        self.acquire_timeout = max(0.0, float(acquire_timeout))
        self.pool_name = pool_name

        self._idle: Dict[str, deque[Any]] = {}
        self._open = 0
        self._connecting = 0
        self._leased = 0
        self._stress_leased = 0
        self._leased_by_profile: Counter[str] = Counter()
        self._profile_limits: Dict[str, int] = {}
        self._peak_leased = 0
        self._lease_ids = itertools.count(1)
        self._capacity_changed = asyncio.Event()
        self._closed = False

        logger.info(
            f"[{pool_name}] Connection manager configured: max={max_connections}, "
            f"reserved_headroom={reserved_headroom}"
        )

    @classmethod
    def from_settings(cls, settings_obj=None, **overrides) -> ConnectionManager:
        """Create a manager for the load principal from application settings."""
        if settings_obj is None:
            from pgstress.config import settings as settings_obj

        ssl: bool | ssl_module.SSLContext | None = None
        if settings_obj.POSTGRES_SSL:
            ssl_context = ssl_module.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl_module.CERT_NONE
            ssl = ssl_context

        kwargs: dict[str, Any] = {
            "connect": make_asyncpg_connect(
                host=settings_obj.POSTGRES_HOST,
                port=settings_obj.POSTGRES_PORT,
                database=settings_obj.POSTGRES_DATABASE,
                user=settings_obj.POSTGRES_USER,
                password=settings_obj.POSTGRES_PASSWORD,
                connect_timeout=settings_obj.CONNECT_TIMEOUT_SECONDS,
                ssl=ssl,
            ),
            "max_connections": settings_obj.POOL_MAX_CONNECTIONS,
            "reserved_headroom": settings_obj.POOL_RESERVED_HEADROOM,
            "acquire_timeout": settings_obj.POOL_ACQUIRE_TIMEOUT_SECONDS,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def stress_capacity(self) -> int:
        """Most leases stress acquisitions may hold at once."""
        return self.max_connections - self.reserved_headroom

    def set_profile_limit(self, profile: str, limit: Optional[int]) -> None:
        """Set (or clear, with None) the per-profile lease ceiling."""
        if limit is None:
            self._profile_limits.pop(profile, None)
            return
        if limit < 1:
            raise ConfigurationError(f"profile ceiling for '{profile}' must be >= 1")
        self._profile_limits[profile] = int(limit)

    def profile_limit(self, profile: str) -> Optional[int]:
        return self._profile_limits.get(profile)

    # ------------------------------------------------------------------
    # Lease lifecycle
    # ------------------------------------------------------------------

    async def acquire(
        self,
        profile: str,
        *,
        reserved: bool = False,
        owner: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Lease:
        """
        Lease a connection for `profile`.

        Args:
            profile: Profile name the lease is counted against
            reserved: If True, the reserved headroom may be used
            owner: Descriptive owner (worker id) recorded on the lease
            timeout: Seconds to wait for capacity (defaults to acquire_timeout)

        Raises:
            PoolExhausted: A ceiling is reached and no capacity freed in time
            ConnectError: Opening a new connection failed
        """
        if self._closed:
            raise ConnectError(f"[{self.pool_name}] connection manager is closed")

        wait_seconds = self.acquire_timeout if timeout is None else max(0.0, timeout)
        deadline = time.monotonic() + wait_seconds

        while True:
            try:
                conn = self._reserve_slot(profile, reserved)
                break
            except PoolExhausted:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                self._capacity_changed.clear()
                try:
                    await asyncio.wait_for(self._capacity_changed.wait(), remaining)
                except asyncio.TimeoutError:
                    pass
                if self._closed:
                    raise ConnectError(f"[{self.pool_name}] connection manager is closed")

        if conn is None:
            try:
                conn = await self._connect(profile)
            except asyncio.CancelledError:
                self._connecting -= 1
                self._unreserve(profile, reserved)
                raise
            except Exception as e:
                self._connecting -= 1
                self._unreserve(profile, reserved)
                raise self._wrap_connect_error(e) from e
            self._connecting -= 1
            self._open += 1

        return Lease(
            lease_id=next(self._lease_ids),
            profile=profile,
            connection=conn,
            reserved=reserved,
            owner=owner,
        )

    def release(self, lease: Lease) -> None:
        """Return a healthy connection to the idle set."""
        self._deactivate(lease, LeaseState.RELEASED)
        conn = lease.connection
        if self._closed or _is_closed(conn):
            self._discard(conn)
        elif _in_transaction(conn):
            # Never hand an open transaction to the next unit of work.
            self._discard(conn)
        else:
            self._idle.setdefault(lease.profile, deque()).append(conn)
        self._capacity_changed.set()

    def invalidate(self, lease: Lease) -> None:
        """Permanently remove a broken connection; its slot is re-established lazily."""
        self._deactivate(lease, LeaseState.INVALIDATED)
        self._discard(lease.connection)
        self._capacity_changed.set()

    @asynccontextmanager
    async def lease(self, profile: str, *, reserved: bool = False):
        """
        Lease a connection for the duration of a block.

        Usage:
            async with manager.lease("bootstrap", reserved=True) as conn:
                await conn.execute("SELECT 1")

        The connection is invalidated if the block raises.
        """
        lease = await self.acquire(profile, reserved=reserved)
        try:
            yield lease.connection
        except BaseException:
            self.invalidate(lease)
            raise
        else:
            self.release(lease)

    # ------------------------------------------------------------------
    # Internals (synchronous: no awaits between check and update)
    # ------------------------------------------------------------------

    def _reserve_slot(self, profile: str, reserved: bool) -> Any | None:
        """Claim capacity for one lease.

        Returns an idle connection to reuse, or None when the caller must
        connect (a connecting slot has then been claimed).
        """
        limit = self._profile_limits.get(profile)
        if limit is not None and self._leased_by_profile[profile] >= limit:
            raise PoolExhausted(
                f"profile '{profile}' is at its ceiling ({limit})",
                profile=profile,
                scope="profile",
            )
        if not reserved and self._stress_leased >= self.stress_capacity:
            raise PoolExhausted(
                f"stress capacity exhausted ({self.stress_capacity} of "
                f"{self.max_connections}, {self.reserved_headroom} reserved)",
                profile=profile,
                scope="stress",
            )

        conn = self._pop_idle(profile)
        if conn is None:
            if self._open + self._connecting >= self.max_connections:
                if not self._evict_idle():
                    raise PoolExhausted(
                        f"global ceiling reached ({self.max_connections})",
                        profile=profile,
                        scope="global",
                    )
            self._connecting += 1

        self._leased += 1
        self._leased_by_profile[profile] += 1
        if not reserved:
            self._stress_leased += 1
        if self._leased > self._peak_leased:
            self._peak_leased = self._leased
        return conn

    def _unreserve(self, profile: str, reserved: bool) -> None:
        self._leased -= 1
        self._leased_by_profile[profile] -= 1
        if self._leased_by_profile[profile] <= 0:
            del self._leased_by_profile[profile]
        if not reserved:
            self._stress_leased -= 1
        self._capacity_changed.set()

    def _deactivate(self, lease: Lease, state: LeaseState) -> None:
        if not lease.active:
            raise LeaseError(
                f"lease {lease.lease_id} for '{lease.profile}' is already {lease.state.value}"
            )
        lease.state = state
        self._unreserve(lease.profile, lease.reserved)

    def _pop_idle(self, profile: str) -> Any | None:
        idle = self._idle.get(profile)
        while idle:
            conn = idle.popleft()
            if _is_closed(conn):
                # Broken while idle: drop it and keep looking.
                self._open -= 1
                continue
            return conn
        return None

    def _evict_idle(self) -> bool:
        """Close one idle connection held for another profile to free a slot."""
        for idle in self._idle.values():
            if idle:
                self._discard(idle.popleft())
                return True
        return False

    def _discard(self, conn: Any) -> None:
        self._open -= 1
        try:
            conn.terminate()
        except Exception as e:
            logger.debug(f"[{self.pool_name}] terminate failed: {type(e).__name__}: {e}")

    def _wrap_connect_error(self, exc: Exception) -> ConnectError:
        if is_auth_failure(exc):
            return AuthenticationError(
                f"[{self.pool_name}] authentication failed: {exc}"
            )
        return ConnectError(
            f"[{self.pool_name}] connect failed: {type(exc).__name__}: {exc or '(no message)'}"
        )

    # ------------------------------------------------------------------
    # Introspection / shutdown
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """
        Get connection manager statistics.

        Returns:
            Dict with pool statistics
        """
        idle = sum(len(q) for q in self._idle.values())
        return {
            "max_connections": self.max_connections,
            "reserved_headroom": self.reserved_headroom,
            "open": self._open,
            "idle": idle,
            "connecting": self._connecting,
            "leased": self._leased,
            "stress_leased": self._stress_leased,
            "peak_leased": self._peak_leased,
            "leased_by_profile": dict(self._leased_by_profile),
            "profile_limits": dict(self._profile_limits),
        }

    @property
    def leased(self) -> int:
        return self._leased

    @property
    def peak_leased(self) -> int:
        return self._peak_leased

    async def close(self) -> None:
        """Close idle connections and refuse further acquisitions.

        Leases still held are discarded when their workers return them.
        """
        self._closed = True
        self._capacity_changed.set()
        logger.info(f"[{self.pool_name}] Closing connection manager...")
        for idle in self._idle.values():
            while idle:
                conn = idle.popleft()
                self._open -= 1
                try:
                    await conn.close(timeout=5)
                except Exception as e:
                    logger.debug(
                        f"[{self.pool_name}] graceful close failed, terminating: {e}"
                    )
                    conn.terminate()
        self._idle.clear()
        logger.info(f"[{self.pool_name}] Connection manager closed")


def _is_closed(conn: Any) -> bool:
    try:
        return bool(conn.is_closed())
    except Exception:
        return True


def _in_transaction(conn: Any) -> bool:
    try:
        return bool(conn.is_in_transaction())
    except Exception:
        return False
