import asyncio
import json
import os
import signal
from collections import Counter

import asyncpg
import pytest

from conftest import FakeConnector
from pgstress.config import settings
from pgstress.core.backoff import Backoff
from pgstress.core.cancellation import CancellationToken
from pgstress.core.errors import AuthenticationError, ConfigurationError
from pgstress.core.schema import SENTINEL_CUSTOMER_ID, SENTINEL_INSERT, truncate_working_tables
from pgstress.main import (
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PROFILE_ERRORS,
    _build_parser,
    _install_signal_handlers,
    bootstrap_schema,
    build_registry,
    exit_code,
    parse_profile_shorthand,
)


def test_parse_profile_shorthand():
    assert parse_profile_shorthand("crud") == {"name": "crud", "kind": "crud"}
    assert parse_profile_shorthand(" CPU_BOMB:3 ") == {
        "name": "cpu_bomb",
        "kind": "cpu_bomb",
        "concurrency": 3,
    }

    taken = Counter()
    names = [parse_profile_shorthand(v, taken=taken)["name"] for v in ("crud", "crud:2", "slow_query", "crud")]
    assert names == ["crud", "crud-2", "slow_query", "crud-3"]


@pytest.mark.parametrize("value", ["nonsense", "crud:many", ""])
def test_parse_profile_shorthand_rejects(value):
    with pytest.raises(ConfigurationError):
        parse_profile_shorthand(value)


def test_build_registry_merges_file_and_shorthand(tmp_path, make_manager):
    path = tmp_path / "profiles.json"
    path.write_text(
        json.dumps(
            {
                "profiles": [
                    {"name": "crud", "kind": "crud", "concurrency": 2},
                    {"name": "broken", "kind": "crud", "concurrency": 0},
                ]
            }
        )
    )
    args = _build_parser().parse_args(
        ["--profiles-file", str(path), "--profile", "crud:1", "--profile", "bogus"]
    )
    registry, handles, errors = build_registry(args, make_manager(max_connections=10))

    assert [h.name for h in handles] == ["crud", "crud-2"]
    assert len(registry) == 2
    assert len(errors) == 2


def test_build_registry_only_filters(make_manager):
    args = _build_parser().parse_args(
        ["--profile", "crud", "--profile", "cpu_bomb", "--only", "cpu_bomb", "--only", "ghost"]
    )
    registry, handles, errors = build_registry(args, make_manager())

    assert [h.name for h in handles] == ["cpu_bomb"]
    assert "crud" in registry
    assert errors == ["--only: unknown profile 'ghost'"]


def test_build_registry_applies_statement_timeout(make_manager):
    args = _build_parser().parse_args(["--profile", "crud:2"])
    _, handles, errors = build_registry(args, make_manager(), statement_timeout=2.0)

    assert errors == []
    assert handles[0].config.statement_timeout_seconds == 2.0


def test_build_registry_uses_configured_statement_timeout(make_manager, monkeypatch):
    monkeypatch.setattr(settings, "STATEMENT_TIMEOUT_SECONDS", 4.5)
    args = _build_parser().parse_args(["--profile", "cpu_bomb"])
    _, handles, _ = build_registry(args, make_manager())

    assert handles[0].config.statement_timeout_seconds == 4.5


def test_parser_defaults():
    args = _build_parser().parse_args([])
    assert args.profile == []
    assert args.duration is None
    assert args.skip_schema is False
    assert args.truncate is False
    assert _build_parser().parse_args(["--truncate"]).truncate is True


@pytest.mark.parametrize(
    "interrupted, errors, failures, expected",
    [
        (False, [], {}, EXIT_OK),
        (False, ["bad profile"], {}, EXIT_PROFILE_ERRORS),
        (False, [], {"crud": "connect failed"}, EXIT_PROFILE_ERRORS),
        (True, [], {}, EXIT_INTERRUPTED),
        (True, ["bad profile"], {}, EXIT_INTERRUPTED),
    ],
)
def test_exit_code(interrupted, errors, failures, expected):
    assert exit_code(interrupted=interrupted, errors=errors, failures=failures) == expected


@pytest.mark.asyncio
async def test_signal_marks_run_interrupted():
    token = CancellationToken()
    interrupted = _install_signal_handlers(token)
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(interrupted.wait(), timeout=2)
    finally:
        loop = asyncio.get_running_loop()
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)

    assert token.cancelled


@pytest.mark.asyncio
async def test_timed_shutdown_is_not_an_interrupt():
    token = CancellationToken()
    interrupted = _install_signal_handlers(token)
    try:
        token.cancel()
        await asyncio.sleep(0)
    finally:
        loop = asyncio.get_running_loop()
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)

    assert not interrupted.is_set()


@pytest.mark.asyncio
async def test_truncate_keeps_sentinel_row(make_manager):
    connector = FakeConnector()
    manager = make_manager(connector)

    await truncate_working_tables(manager)

    calls = connector.connections[0].calls
    assert calls[0][0] == "TRUNCATE stress_orders, stress_customers"
    assert calls[1] == (SENTINEL_INSERT, (SENTINEL_CUSTOMER_ID,))
    assert manager.leased == 0


class _FlakyConnector(FakeConnector):
    def __init__(self, failures: int, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def __call__(self, profile):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        return await super().__call__(profile)


@pytest.mark.asyncio
async def test_bootstrap_schema_retries_until_reachable(make_manager):
    connector = _FlakyConnector(failures=3)
    backoff = Backoff(base_seconds=0.001, max_seconds=0.002)

    ready = await bootstrap_schema(make_manager(connector), CancellationToken(), backoff)

    assert ready is True
    assert backoff.consecutive_failures == 3
    statements = [sql for sql, _ in connector.connections[0].calls]
    assert any("CREATE TABLE IF NOT EXISTS stress_orders" in s for s in statements)


@pytest.mark.asyncio
async def test_bootstrap_schema_stops_on_shutdown(make_manager):
    token = CancellationToken()
    token.cancel()
    ready = await bootstrap_schema(
        make_manager(_FlakyConnector(failures=100)), token, Backoff(base_seconds=0.001)
    )
    assert ready is False


@pytest.mark.asyncio
async def test_bootstrap_schema_does_not_retry_bad_credentials(make_manager):
    connector = FakeConnector(fail_with=asyncpg.exceptions.InvalidPasswordError("password authentication failed"))
    with pytest.raises(AuthenticationError):
        await bootstrap_schema(make_manager(connector), CancellationToken(), Backoff(base_seconds=0.001))
