"""
Pre-flight warnings for a harness run.

Checks the database boundary before any load is generated: the load and
monitoring principals must be distinct and appropriately privileged, the
instrumentation views must be readable, and the server must have room for
the harness ceiling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

import asyncpg

from pgstress.connectors.postgres_pool import ConnectionManager
from pgstress.core.errors import HarnessError, classify_sql_error
from pgstress.models.profile_config import ProfileConfig, WorkloadKind

logger = logging.getLogger(__name__)

PREFLIGHT_PROFILE = "preflight"
PREFLIGHT_TIMEOUT_SECONDS = 10.0

# Failures that mean the server could not be reached or stopped answering.
_UNREACHABLE_ERRORS = (HarnessError, OSError, asyncpg.InterfaceError, asyncio.TimeoutError)

MonitorConnect = Callable[[], Awaitable[Any]]

SERVER_LIMITS_SQL = """
    SELECT current_setting('max_connections')::int AS max_connections,
           current_setting('superuser_reserved_connections')::int AS superuser_reserved,
           (SELECT rolsuper FROM pg_roles WHERE rolname = current_user) AS is_superuser,
           (SELECT count(*) FROM pg_extension WHERE extname = 'pg_stat_statements') AS pgss
"""

MONITOR_ACCESS_SQL = """
    SELECT pg_has_role(current_user, 'pg_read_all_stats', 'MEMBER') AS read_all_stats,
           (SELECT count(*) FROM pg_stat_activity) AS sessions
"""

MONITOR_STATEMENTS_SQL = "SELECT count(*) FROM pg_stat_statements"


def make_monitor_connect(settings_obj=None) -> Optional[MonitorConnect]:
    """Connect factory for the monitoring principal, or None when it is not configured."""
    if settings_obj is None:
        from pgstress.config import settings as settings_obj

    if not settings_obj.MONITOR_USER:
        return None

    async def _connect() -> asyncpg.Connection:
        return await asyncpg.connect(
            host=settings_obj.POSTGRES_HOST,
            port=settings_obj.POSTGRES_PORT,
            database=settings_obj.POSTGRES_DATABASE,
            user=settings_obj.MONITOR_USER,
            password=settings_obj.MONITOR_PASSWORD,
            timeout=settings_obj.CONNECT_TIMEOUT_SECONDS,
            server_settings={"application_name": "pgstress:preflight-monitor"},
        )

    return _connect


def _warning(
    severity: str,
    title: str,
    message: str,
    recommendations: list[str],
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    return {
        "severity": severity,
        "title": title,
        "message": message,
        "recommendations": recommendations,
        "details": details or {},
    }


def check_principals(load_user: str, monitor_user: str) -> list[dict[str, Any]]:
    warnings: list[dict[str, Any]] = []
    if not monitor_user:
        warnings.append(
            _warning(
                "low",
                "Monitoring principal not configured",
                "MONITOR_USER is empty; the instrumentation views were not checked.",
                ["Set MONITOR_USER/MONITOR_PASSWORD to the collector's role"],
            )
        )
    elif monitor_user == load_user:
        warnings.append(
            _warning(
                "high",
                "Shared principal",
                (
                    f"The load principal and the monitoring principal are both "
                    f"'{load_user}'. Harness traffic and collector traffic cannot "
                    f"be told apart, and the collector inherits DML rights."
                ),
                [
                    "Create a dedicated read-only role for the collector",
                    "Grant it pg_monitor (or pg_read_all_stats)",
                ],
                {"load_user": load_user, "monitor_user": monitor_user},
            )
        )
    return warnings


def check_profile_demand(
    profiles: Iterable[ProfileConfig], *, stress_capacity: int
) -> list[dict[str, Any]]:
    """Warn when the profiles together want more connections than stress capacity."""
    demand = 0
    for p in profiles:
        wanted = p.concurrency
        if p.kind == WorkloadKind.CONNECTION_BOMB:
            wanted *= p.intensity.connections_per_worker
        ceiling = p.connection_ceiling
        demand += min(wanted, ceiling) if ceiling is not None else wanted
    if demand <= stress_capacity:
        return []
    return [
        _warning(
            "medium",
            "Profiles will contend for connections",
            (
                f"Active profiles may want ~{demand} connections but stress "
                f"capacity is {stress_capacity}. Workers will see POOL_EXHAUSTED "
                f"and back off."
            ),
            [
                "Lower concurrency or set per-profile max_connections",
                "Raise POOL_MAX_CONNECTIONS if the server has room",
            ],
            {"demand": demand, "stress_capacity": stress_capacity},
        )
    ]


async def _check_server(manager: ConnectionManager, timeout: float) -> list[dict[str, Any]]:
    warnings: list[dict[str, Any]] = []
    try:
        async with manager.lease(PREFLIGHT_PROFILE, reserved=True) as conn:
            row = await conn.fetchrow(SERVER_LIMITS_SQL, timeout=timeout)
    except _UNREACHABLE_ERRORS as e:
        _, category = classify_sql_error(e)
        return [
            _warning(
                "high",
                "Load principal cannot connect",
                f"Pre-flight connection failed ({category}): {type(e).__name__}: {e}",
                ["Check POSTGRES_HOST/PORT/USER/PASSWORD"],
                {"category": category},
            )
        ]
    except asyncpg.PostgresError as e:
        return [
            _warning(
                "medium",
                "Server limits unavailable",
                f"Could not read server settings: {type(e).__name__}: {e}",
                [],
            )
        ]

    server_max = int(row["max_connections"])
    superuser_reserved = int(row["superuser_reserved"])
    available = server_max - superuser_reserved
    if manager.max_connections > available:
        warnings.append(
            _warning(
                "medium",
                "Harness ceiling above server capacity",
                (
                    f"The harness may open {manager.max_connections} connections but "
                    f"the server accepts {available} non-superuser connections. The "
                    f"server will reject connections before the harness ceiling is reached, "
                    f"and the collector may be locked out."
                ),
                [
                    f"Set POOL_MAX_CONNECTIONS <= {max(1, available - 5)}",
                    "Raise max_connections on the server",
                ],
                {
                    "harness_max_connections": manager.max_connections,
                    "server_max_connections": server_max,
                    "superuser_reserved_connections": superuser_reserved,
                },
            )
        )
    if row["is_superuser"]:
        warnings.append(
            _warning(
                "high",
                "Load principal is a superuser",
                (
                    "Superuser sessions can use the server's reserved connection "
                    "slots, so connection exhaustion may lock out the monitoring "
                    "principal."
                ),
                ["Run the harness as an unprivileged role that owns the working schema"],
            )
        )
    if not row["pgss"]:
        warnings.append(
            _warning(
                "medium",
                "pg_stat_statements not installed",
                "Per-statement instrumentation is unavailable in this database.",
                [
                    "Add pg_stat_statements to shared_preload_libraries",
                    "CREATE EXTENSION pg_stat_statements",
                ],
            )
        )
    return warnings


async def _check_monitor(
    monitor_connect: MonitorConnect, timeout: float
) -> list[dict[str, Any]]:
    try:
        conn = await asyncio.wait_for(monitor_connect(), timeout)
    except (asyncpg.PostgresError, *_UNREACHABLE_ERRORS) as e:
        return [
            _warning(
                "high",
                "Monitoring principal cannot connect",
                f"{type(e).__name__}: {e}",
                ["Check MONITOR_USER/MONITOR_PASSWORD and pg_hba.conf"],
            )
        ]

    warnings: list[dict[str, Any]] = []
    try:
        row = await conn.fetchrow(MONITOR_ACCESS_SQL, timeout=timeout)
        if not row["read_all_stats"]:
            warnings.append(
                _warning(
                    "medium",
                    "Monitoring principal lacks pg_read_all_stats",
                    (
                        "pg_stat_activity hides query text and wait events of other "
                        "roles from this principal."
                    ),
                    ["GRANT pg_monitor TO <monitor role>"],
                )
            )
        try:
            await conn.fetchval(MONITOR_STATEMENTS_SQL, timeout=timeout)
        except asyncpg.PostgresError as e:
            warnings.append(
                _warning(
                    "medium",
                    "pg_stat_statements not readable by monitoring principal",
                    f"{type(e).__name__}: {e}",
                    ["Install pg_stat_statements and grant pg_read_all_stats"],
                )
            )
    except (asyncpg.PostgresError, *_UNREACHABLE_ERRORS) as e:
        warnings.append(
            _warning(
                "high",
                "Monitoring principal check failed",
                f"{type(e).__name__}: {e}",
                ["Check that the server is reachable and responsive"],
            )
        )
    finally:
        # Monitoring connections are single-use.
        conn.terminate()
    return warnings


async def generate_preflight_warnings(
    manager: ConnectionManager,
    *,
    load_user: str,
    monitor_user: str = "",
    profiles: Iterable[ProfileConfig] = (),
    monitor_connect: Optional[MonitorConnect] = None,
    timeout: float = PREFLIGHT_TIMEOUT_SECONDS,
) -> list[dict[str, Any]]:
    """
    Generate pre-flight warnings for a harness run.

    Unreachable or unresponsive servers are reported as warnings; nothing
    here raises for database failures.

    Args:
        manager: Connection manager of the load principal
        load_user: Load principal role name
        monitor_user: Monitoring principal role name ("" when not configured)
        profiles: Profiles about to be activated
        monitor_connect: Factory for a monitoring-principal connection
        timeout: Seconds allowed for each pre-flight connect or query

    Returns:
        List of warning dicts with keys: severity, title, message, recommendations, details
    """
    warnings: list[dict[str, Any]] = []
    warnings.extend(check_principals(load_user, monitor_user))
    warnings.extend(
        check_profile_demand(profiles, stress_capacity=manager.stress_capacity)
    )
    warnings.extend(await _check_server(manager, timeout))
    if monitor_connect is not None and monitor_user and monitor_user != load_user:
        warnings.extend(await _check_monitor(monitor_connect, timeout))

    for w in warnings:
        log = logger.warning if w["severity"] in ("high", "medium") else logger.info
        log(f"Pre-flight [{w['severity']}] {w['title']}: {w['message']}")
    return warnings
