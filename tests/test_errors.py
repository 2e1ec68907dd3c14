import asyncio

import asyncpg
import pytest
from asyncpg import exceptions as pg_exc

from pgstress.core.errors import (
    AuthenticationError,
    ConnectError,
    PoolExhausted,
    StatementTimeout,
    classify_sql_error,
    is_auth_failure,
    is_constraint_violation,
)
from pgstress.models import OutcomeKind

INFRA = OutcomeKind.INFRASTRUCTURE_ERROR
APP = OutcomeKind.APPLICATION_ERROR


class _ClientDataError(asyncpg.InterfaceError, ValueError):
    pass


@pytest.mark.parametrize(
    "exc,expected",
    [
        (PoolExhausted("full", profile="p", scope="stress"), (INFRA, "POOL_EXHAUSTED")),
        (AuthenticationError("bad password"), (INFRA, "AUTH_FAILED")),
        (ConnectError("refused"), (INFRA, "CONNECT_FAILED")),
        (StatementTimeout("slow"), (INFRA, "TIMEOUT")),
        (asyncio.TimeoutError(), (INFRA, "TIMEOUT")),
        (pg_exc.QueryCanceledError("canceling statement due to statement timeout"), (INFRA, "TIMEOUT")),
        (pg_exc.TooManyConnectionsError("too many clients"), (INFRA, "SQLSTATE_53300")),
        (pg_exc.AdminShutdownError("terminating connection"), (INFRA, "SQLSTATE_57P01")),
        (pg_exc.ConnectionFailureError("connection failure"), (INFRA, "SQLSTATE_08006")),
        (pg_exc.UniqueViolationError("duplicate key"), (APP, "SQLSTATE_23505")),
        (pg_exc.ForeignKeyViolationError("fk"), (APP, "SQLSTATE_23503")),
        (pg_exc.PostgresSyntaxError("syntax error"), (APP, "SQLSTATE_42601")),
        (pg_exc.DivisionByZeroError("division by zero"), (APP, "SQLSTATE_22012")),
        (pg_exc.UndefinedTableError("missing"), (APP, "SQLSTATE_42P01")),
        (_ClientDataError("invalid input for query argument"), (APP, "CLIENT_DATA_ERROR")),
        (asyncpg.InterfaceError("connection is closed"), (INFRA, "CONNECTION_LOST")),
        (ConnectionResetError("reset by peer"), (INFRA, "NETWORK_ERROR")),
        (KeyError("x"), (APP, "KeyError")),
    ],
)
def test_classify_sql_error(exc, expected):
    assert classify_sql_error(exc) == expected


def test_constraint_and_auth_helpers():
    assert is_constraint_violation(pg_exc.CheckViolationError("amount"))
    assert is_constraint_violation(pg_exc.UniqueViolationError("dup"))
    assert not is_constraint_violation(pg_exc.DivisionByZeroError("zero"))
    assert not is_constraint_violation(ValueError("nope"))

    assert is_auth_failure(pg_exc.InvalidPasswordError("password authentication failed"))
    assert is_auth_failure(pg_exc.InvalidAuthorizationSpecificationError("no role"))
    assert not is_auth_failure(OSError("refused"))


def test_pool_exhausted_carries_scope():
    e = PoolExhausted("profile ceiling", profile="bomb", scope="profile")
    assert e.profile == "bomb"
    assert e.scope == "profile"
    assert str(e) == "profile ceiling"
