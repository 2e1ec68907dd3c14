import json

import pytest
from pydantic import ValidationError

from pgstress.core.errors import ConfigurationError
from pgstress.core.profile_registry import ProfileRegistry
from pgstress.models import (
    ConnectionBombIntensity,
    CrudIntensity,
    ErrorGeneratorIntensity,
    ProfileConfig,
    WorkloadKind,
)


def test_profile_defaults_pick_intensity_model_for_kind():
    p = ProfileConfig(name="crud", kind="crud")
    assert p.kind == WorkloadKind.CRUD
    assert isinstance(p.intensity, CrudIntensity)
    assert p.concurrency == 1
    assert p.connection_ceiling is None


def test_profile_is_immutable():
    p = ProfileConfig(name="crud", kind="crud")
    with pytest.raises(ValidationError):
        p.concurrency = 5


@pytest.mark.parametrize(
    "doc",
    [
        {"name": "x", "kind": "crud", "concurrency": 0},
        {"name": "x", "kind": "crud", "pacing_ms": -1},
        {"name": "x", "kind": "error_generator", "intensity": {"error_ratio": 1.5}},
        {"name": "x", "kind": "crud", "intensity": {"unknown_knob": 1}},
        {"name": "x", "kind": "memory_test", "intensity": {"rows": 50_000_000, "row_width": 1_000_000}},
        {"name": "x", "kind": "nope"},
        {"name": "  ", "kind": "crud"},
    ],
)
def test_invalid_profiles_are_rejected(doc):
    with pytest.raises(ValidationError):
        ProfileConfig.model_validate(doc)


def test_slow_query_sleep_must_stay_below_statement_timeout():
    with pytest.raises(ValidationError) as excinfo:
        ProfileConfig(
            name="slow",
            kind="slow_query",
            statement_timeout_seconds=5,
            intensity={"distribution": "uniform", "max_sleep_seconds": 10},
        )
    assert "statement_timeout_seconds" in str(excinfo.value)

    ok = ProfileConfig(
        name="slow",
        kind="slow_query",
        statement_timeout_seconds=5,
        intensity={"distribution": "fixed", "sleep_seconds": 2},
    )
    assert ok.intensity.longest_sleep() == 2


def test_connection_bomb_ceiling_defaults_to_what_workers_leak():
    p = ProfileConfig(
        name="bomb",
        kind="connection_bomb",
        concurrency=3,
        intensity={"connections_per_worker": 4},
    )
    assert isinstance(p.intensity, ConnectionBombIntensity)
    assert p.connection_ceiling == 12

    capped = p.model_copy(update={"max_connections": 5})
    assert capped.connection_ceiling == 5


def test_registry_register_and_list():
    registry = ProfileRegistry()
    a = registry.register({"name": "a", "kind": "crud", "concurrency": 2})
    b = registry.register(ProfileConfig(name="b", kind="cpu_bomb"))

    assert [h.name for h in registry.list()] == ["a", "b"]
    assert a.profile_id != b.profile_id
    assert registry.get("a") is a
    assert "b" in registry
    assert len(registry) == 2


def test_registry_rejects_invalid_and_duplicate_profiles():
    registry = ProfileRegistry()
    registry.register({"name": "a", "kind": "crud"})

    with pytest.raises(ConfigurationError, match="already registered"):
        registry.register({"name": "a", "kind": "cpu_bomb"})
    with pytest.raises(ConfigurationError, match="error_ratio"):
        registry.register(
            {"name": "e", "kind": "error_generator", "intensity": {"error_ratio": -0.1}}
        )
    with pytest.raises(ConfigurationError):
        registry.get("missing")


def test_registry_rejects_ceiling_above_stress_capacity():
    registry = ProfileRegistry(stress_capacity=8, max_connections=10)
    with pytest.raises(ConfigurationError, match="stress capacity"):
        registry.register({"name": "bomb", "kind": "connection_bomb", "max_connections": 9})

    handle = registry.register(
        {
            "name": "admin",
            "kind": "crud",
            "max_connections": 9,
            "use_reserved_headroom": True,
        }
    )
    assert handle.config.max_connections == 9


def test_registry_applies_default_statement_timeout():
    registry = ProfileRegistry(statement_timeout_seconds=2.5)

    default = registry.register({"name": "crud", "kind": "crud"})
    explicit = registry.register(
        {"name": "crud-2", "kind": "crud", "statement_timeout_seconds": 9}
    )
    built = registry.register(ProfileConfig(name="cpu", kind="cpu_bomb"))

    assert default.config.statement_timeout_seconds == 2.5
    assert explicit.config.statement_timeout_seconds == 9
    assert built.config.statement_timeout_seconds == 30.0


def test_registry_load_file_collects_errors(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text(
        json.dumps(
            {
                "profiles": [
                    {"name": "crud", "kind": "crud", "concurrency": 4},
                    {"name": "bad", "kind": "crud", "concurrency": 0},
                    {"name": "errors", "kind": "error_generator", "intensity": {"error_ratio": 0.25}},
                ]
            }
        )
    )
    registry = ProfileRegistry()
    handles, errors = registry.load_file(path)

    assert [h.name for h in handles] == ["crud", "errors"]
    assert len(errors) == 1 and "bad" in errors[0]
    assert isinstance(handles[1].config.intensity, ErrorGeneratorIntensity)
    assert handles[1].config.intensity.error_ratio == 0.25


def test_registry_load_file_rejects_bad_documents(tmp_path):
    registry = ProfileRegistry()
    with pytest.raises(ConfigurationError):
        registry.load_file(tmp_path / "missing.json")

    path = tmp_path / "bad.json"
    path.write_text('{"profiles": 3}')
    with pytest.raises(ConfigurationError):
        registry.load_file(path)

    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        registry.load_file(path)


def test_example_profiles_file_is_valid():
    from pathlib import Path

    registry = ProfileRegistry(stress_capacity=48, max_connections=50)
    handles, errors = registry.load_file(
        Path(__file__).parent.parent / "profiles.example.json"
    )
    assert errors == []
    assert {h.config.kind for h in handles} == set(WorkloadKind)
