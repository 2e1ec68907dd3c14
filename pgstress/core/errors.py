"""
Harness error taxonomy and SQL error classification.

Configuration errors are fatal for the profile they belong to. Pool, connect
and timeout errors are infrastructure-level: workers back off and retry.
Errors raised by the server while executing a statement are application-level.
"""

from __future__ import annotations

import asyncio
import re
import socket

import asyncpg

from pgstress.models.outcome import OutcomeKind

_SQLSTATE_RE = re.compile(r"\b([0-9A-Z]{5})\b")

# SQLSTATE classes that describe the connection or the server, not the statement.
#   08: connection exception
#   53: insufficient resources (too many connections, out of memory, disk full)
#   57: operator intervention (query canceled, admin shutdown, cannot connect now)
#   58: system error
INFRASTRUCTURE_SQLSTATE_CLASSES = frozenset({"08", "53", "57", "58"})

# 57014 is statement_timeout / cancel request; reported as a timeout.
QUERY_CANCELED_SQLSTATE = "57014"

INTEGRITY_CONSTRAINT_CLASS = "23"

AUTH_SQLSTATES = frozenset({"28000", "28P01"})


class HarnessError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(HarnessError):
    """Invalid profile or harness configuration. Fatal for the affected profile."""


class PoolExhausted(HarnessError):
    """The connection manager is at a ceiling for this acquisition."""

    def __init__(self, message: str, *, profile: str, scope: str) -> None:
        super().__init__(message)
        self.profile = profile
        self.scope = scope


class ConnectError(HarnessError):
    """Opening a connection to the database failed."""


class AuthenticationError(ConnectError):
    """The database rejected the load principal's credentials."""


class StatementTimeout(HarnessError):
    """A statement exceeded its per-statement timeout."""


class InducedApplicationError(HarnessError):
    """An intentionally invalid statement failed as intended."""

    def __init__(
        self, message: str, *, error_kind: str | None = None, cause: BaseException | None = None
    ) -> None:
        super().__init__(message)
        self.error_kind = error_kind
        self.cause = cause
        self.sqlstate = _sqlstate(cause) if cause is not None else None


class SchemaViolation(HarnessError):
    """An unexpected constraint violation outside the error-generator profile."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.sqlstate = _sqlstate(cause) if cause is not None else None


class LeaseError(HarnessError):
    """A lease was released or invalidated when it was not active."""


class InvalidTransition(HarnessError):
    """A lifecycle operation was requested from a state that does not allow it."""


def _sqlstate(exc: BaseException) -> str | None:
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return str(sqlstate)
    return None


def classify_sql_error(exc: BaseException) -> tuple[OutcomeKind, str]:
    """
    Return (outcome kind, stable low-cardinality category) for an execution error.

    These errors are expected under load, so callers aggregate them by
    category rather than logging each one.
    """
    if isinstance(exc, PoolExhausted):
        return OutcomeKind.INFRASTRUCTURE_ERROR, "POOL_EXHAUSTED"
    if isinstance(exc, AuthenticationError):
        return OutcomeKind.INFRASTRUCTURE_ERROR, "AUTH_FAILED"
    if isinstance(exc, ConnectError):
        return OutcomeKind.INFRASTRUCTURE_ERROR, "CONNECT_FAILED"
    if isinstance(exc, (StatementTimeout, asyncio.TimeoutError, TimeoutError)):
        return OutcomeKind.INFRASTRUCTURE_ERROR, "TIMEOUT"

    sqlstate = _sqlstate(exc)
    if sqlstate == QUERY_CANCELED_SQLSTATE:
        return OutcomeKind.INFRASTRUCTURE_ERROR, "TIMEOUT"
    if sqlstate:
        if sqlstate[:2] in INFRASTRUCTURE_SQLSTATE_CLASSES:
            return OutcomeKind.INFRASTRUCTURE_ERROR, f"SQLSTATE_{sqlstate}"
        return OutcomeKind.APPLICATION_ERROR, f"SQLSTATE_{sqlstate}"

    if isinstance(exc, asyncpg.PostgresError):
        # Server error without a sqlstate attribute; fall back to the message.
        m = _SQLSTATE_RE.search(str(exc))
        if m:
            return OutcomeKind.APPLICATION_ERROR, f"SQLSTATE_{m.group(1)}"
        return OutcomeKind.APPLICATION_ERROR, type(exc).__name__

    if isinstance(exc, asyncpg.InterfaceError):
        # Client-side argument encoding problems subclass ValueError.
        if isinstance(exc, ValueError):
            return OutcomeKind.APPLICATION_ERROR, "CLIENT_DATA_ERROR"
        return OutcomeKind.INFRASTRUCTURE_ERROR, "CONNECTION_LOST"

    if isinstance(exc, (socket.gaierror, ConnectionError, OSError)):
        return OutcomeKind.INFRASTRUCTURE_ERROR, "NETWORK_ERROR"

    return OutcomeKind.APPLICATION_ERROR, type(exc).__name__


def is_constraint_violation(exc: BaseException) -> bool:
    sqlstate = _sqlstate(exc)
    return bool(sqlstate) and sqlstate[:2] == INTEGRITY_CONSTRAINT_CLASS


def is_auth_failure(exc: BaseException) -> bool:
    return _sqlstate(exc) in AUTH_SQLSTATES
