import asyncio
import logging

import pytest

from conftest import FakeConnector
from pgstress.connectors.postgres_pool import ConnectionManager
from pgstress.core.backoff import Backoff
from pgstress.core.errors import ConfigurationError, InvalidTransition
from pgstress.core.profile_registry import ProfileRegistry
from pgstress.core.scenario_controller import ProfileState, ScenarioController
from pgstress.core.worker import WorkerState
from pgstress.models import WorkloadKind

SHUTDOWN_TIMEOUT = 2.0


def _controller(manager, registry=None, **kwargs):
    kwargs.setdefault("shutdown_timeout", SHUTDOWN_TIMEOUT)
    kwargs.setdefault("backoff_factory", lambda: Backoff(base_seconds=0.001, max_seconds=0.01))
    return ScenarioController(registry=registry or ProfileRegistry(), manager=manager, **kwargs)


def _manager(**kwargs):
    kwargs.setdefault("max_connections", 20)
    kwargs.setdefault("reserved_headroom", 2)
    return ConnectionManager(connect=kwargs.pop("connect", FakeConnector()), **kwargs)


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", list(WorkloadKind))
async def test_activate_then_deactivate_stops_every_worker(kind):
    manager = _manager()
    controller = _controller(manager)
    handle = controller.registry.register(
        {"name": kind.value, "kind": kind.value, "concurrency": 3, "pacing_ms": 1}
    )
    assert controller.state(handle) == ProfileState.REGISTERED

    await controller.activate(handle)
    assert controller.state(handle) == ProfileState.ACTIVE

    loop = asyncio.get_running_loop()
    started = loop.time()
    stats = await controller.deactivate(handle)

    assert loop.time() - started < SHUTDOWN_TIMEOUT + 1
    assert controller.state(handle) == ProfileState.STOPPED
    assert stats.state == "stopped"
    assert all(s == WorkerState.STOPPED for s in controller.worker_states(handle).values())
    assert len(controller.worker_states(handle)) == 3
    assert manager.leased == 0


@pytest.mark.asyncio
async def test_lifecycle_transitions_are_enforced():
    controller = _controller(_manager())
    handle = controller.registry.register({"name": "crud", "kind": "crud"})

    with pytest.raises(InvalidTransition):
        await controller.deactivate(handle)

    await controller.activate(handle)
    with pytest.raises(InvalidTransition):
        await controller.activate(handle)

    await controller.deactivate(handle)
    # Deactivating a stopped profile is a no-op.
    await controller.deactivate(handle)

    # A stopped profile can be activated again; counters carry over.
    before = controller.stats(handle).attempts
    await controller.activate(handle)
    await _wait_for(lambda: controller.stats(handle).attempts > before)
    await controller.shutdown()
    assert controller.state(handle) == ProfileState.STOPPED

    with pytest.raises(InvalidTransition):
        await controller.activate(handle)


@pytest.mark.asyncio
async def test_incompatible_profile_fails_alone():
    manager = _manager(max_connections=6, reserved_headroom=2)
    controller = _controller(manager)
    too_big = controller.registry.register(
        {"name": "bomb", "kind": "connection_bomb", "max_connections": 5}
    )
    ok = controller.registry.register({"name": "crud", "kind": "crud", "concurrency": 2})

    with pytest.raises(ConfigurationError):
        await controller.activate(too_big)

    failures = await controller.activate_all([too_big, ok])
    assert set(failures) == {"bomb"}
    assert controller.state(ok) == ProfileState.ACTIVE
    assert controller.state(too_big) == ProfileState.REGISTERED
    await controller.shutdown()


@pytest.mark.asyncio
async def test_crud_and_connection_bomb_together_then_drain():
    connector = FakeConnector()
    manager = _manager(connect=connector, max_connections=12, reserved_headroom=2)
    controller = _controller(manager)
    crud = controller.registry.register(
        {"name": "crud", "kind": "crud", "concurrency": 4, "pacing_ms": 1}
    )
    bomb = controller.registry.register(
        {
            "name": "bomb",
            "kind": "connection_bomb",
            "concurrency": 2,
            "max_connections": 6,
            "intensity": {"connections_per_worker": 3, "hold_seconds": 0.05},
        }
    )

    over_ceiling: list[dict] = []

    def _check():
        s = manager.stats()
        if s["open"] + s["connecting"] > manager.max_connections:
            over_ceiling.append(s)
        if s["stress_leased"] > manager.stress_capacity:
            over_ceiling.append(s)
        if s["leased_by_profile"].get("bomb", 0) > 6:
            over_ceiling.append(s)

    failures = await controller.activate_all()
    assert failures == {}

    for _ in range(60):
        _check()
        await asyncio.sleep(0.005)

    await _wait_for(lambda: controller.stats(bomb).attempts > 6)
    await _wait_for(lambda: controller.stats(crud).successes > 20)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await asyncio.gather(controller.deactivate(crud), controller.deactivate(bomb))
    assert loop.time() - started < SHUTDOWN_TIMEOUT + 1

    assert over_ceiling == []
    assert manager.peak_leased <= manager.stress_capacity
    for handle in (crud, bomb):
        assert controller.state(handle) == ProfileState.STOPPED
        assert all(s == WorkerState.STOPPED for s in controller.worker_states(handle).values())
    assert manager.leased == 0
    assert manager.profile_limit("bomb") is None


@pytest.mark.asyncio
async def test_shutdown_force_cancels_stuck_workers(caplog):
    async def handler(conn, sql, args):
        # Never finishes inside the statement timeout used below.
        await asyncio.sleep(30)

    manager = _manager(connect=FakeConnector(handler=handler))
    controller = _controller(manager, shutdown_timeout=0.1)
    handle = controller.registry.register(
        {"name": "stuck", "kind": "cpu_bomb", "concurrency": 2, "statement_timeout_seconds": 60}
    )
    await controller.activate(handle)
    await _wait_for(lambda: manager.leased == 2)

    caplog.set_level(logging.WARNING, logger="pgstress.core.worker_pool")
    loop = asyncio.get_running_loop()
    started = loop.time()
    await controller.shutdown()

    assert loop.time() - started < 2
    assert controller.state(handle) == ProfileState.STOPPED
    assert all(s == WorkerState.STOPPED for s in controller.worker_states(handle).values())
    assert manager.leased == 0
    assert "[stuck] 2 worker(s) still running after 0.1s; cancelling" in caplog.text


@pytest.mark.asyncio
async def test_run_for_duration_returns_snapshot():
    manager = _manager()
    controller = _controller(manager)
    controller.registry.register({"name": "errors", "kind": "error_generator", "concurrency": 2})
    controller.registry.register({"name": "idle", "kind": "crud"})
    await controller.activate("errors")

    snapshot = await controller.run(0.1, stats_interval=0.02)

    assert set(snapshot["profiles"]) == {"errors", "idle"}
    errors = snapshot["profiles"]["errors"]
    assert errors.state == "stopped"
    assert errors.attempts > 0
    assert snapshot["profiles"]["idle"].state == "registered"
    assert snapshot["pool"]["leased"] == 0


@pytest.mark.asyncio
async def test_root_token_cancellation_ends_run():
    controller = _controller(_manager())
    controller.registry.register({"name": "crud", "kind": "crud"})
    await controller.activate("crud")

    asyncio.get_running_loop().call_later(0.05, controller.root_token.cancel)
    snapshot = await asyncio.wait_for(controller.run(), 3)
    assert snapshot["profiles"]["crud"].state == "stopped"
