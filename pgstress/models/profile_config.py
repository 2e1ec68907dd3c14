"""
Profile Configuration Models

Defines Pydantic models for workload profiles:
- Workload kinds (CRUD, slow query, CPU bomb, ...)
- Kind-specific intensity parameters and their bounds
- The profile itself (concurrency, pacing, connection ceiling)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    SerializeAsAny,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)


class WorkloadKind(str, Enum):
    """Supported workload patterns."""

    CRUD = "crud"
    SLOW_QUERY = "slow_query"
    CPU_BOMB = "cpu_bomb"
    CONNECTION_BOMB = "connection_bomb"
    ERROR_GENERATOR = "error_generator"
    MEMORY_TEST = "memory_test"


class ErrorKind(str, Enum):
    """Kinds of intentionally invalid statements."""

    SYNTAX = "syntax"
    TYPE_MISMATCH = "type_mismatch"
    CONSTRAINT = "constraint"
    UNDEFINED_OBJECT = "undefined_object"
    DIVISION_BY_ZERO = "division_by_zero"


# Upper bound on bytes a single memory-pressure statement may try to materialize.
MAX_MEMORY_BYTES_PER_STATEMENT = 4 * 1024 * 1024 * 1024


class IntensityParams(BaseModel):
    """Base class for kind-specific intensity parameters."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class CrudIntensity(IntensityParams):
    max_rows_per_worker: int = Field(
        500, ge=2, le=1_000_000, description="Working-set size each worker keeps"
    )
    orders_per_customer: int = Field(
        3, ge=1, le=100, description="Max orders attached to one customer"
    )
    select_limit: int = Field(50, ge=1, le=10_000, description="Rows per read")


class SlowQueryIntensity(IntensityParams):
    distribution: Literal["fixed", "uniform", "exponential"] = "fixed"
    sleep_seconds: float = Field(
        1.0, gt=0, le=600, description="Fixed sleep, or the mean for exponential"
    )
    min_sleep_seconds: float = Field(0.5, ge=0, le=600)
    max_sleep_seconds: float = Field(
        5.0, gt=0, le=600, description="Upper bound for uniform and exponential"
    )

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.min_sleep_seconds > self.max_sleep_seconds:
            raise ValueError("min_sleep_seconds must be <= max_sleep_seconds")
        return self

    def longest_sleep(self) -> float:
        """Longest sleep this distribution can produce."""
        if self.distribution == "fixed":
            return self.sleep_seconds
        return self.max_sleep_seconds


class CpuBombIntensity(IntensityParams):
    series_size: int = Field(
        2_000_000, ge=1_000, le=1_000_000_000, description="Rows generated per query"
    )
    recursion_depth: int = Field(100_000, ge=100, le=10_000_000)
    variants: List[Literal["aggregate", "hash", "recursive"]] = Field(
        default_factory=lambda: ["aggregate", "hash", "recursive"], min_length=1
    )


class ConnectionBombIntensity(IntensityParams):
    connections_per_worker: int = Field(
        5, ge=1, le=1_000, description="Leases each worker leaks before bulk release"
    )
    hold_seconds: float = Field(
        10.0, ge=0, le=3_600, description="How long leaked leases are held"
    )
    idle_in_transaction: bool = Field(
        False, description="Leak connections with an open transaction"
    )


class ErrorGeneratorIntensity(IntensityParams):
    error_ratio: float = Field(
        0.5, ge=0.0, le=1.0, description="Fraction of statements that are invalid"
    )
    error_kinds: List[ErrorKind] = Field(
        default_factory=lambda: list(ErrorKind), min_length=1
    )


class MemoryTestIntensity(IntensityParams):
    rows: int = Field(200_000, ge=1, le=50_000_000)
    row_width: int = Field(1_024, ge=1, le=1_000_000, description="Bytes per row")
    fetch_limit: int = Field(
        10_000, ge=1, le=1_000_000, description="Rows pulled to the client by wide_fetch"
    )
    variants: List[
        Literal["sort", "hash_aggregate", "array_aggregate", "wide_fetch"]
    ] = Field(
        default_factory=lambda: ["sort", "hash_aggregate", "array_aggregate", "wide_fetch"],
        min_length=1,
    )

    @model_validator(mode="after")
    def validate_footprint(self):
        if self.rows * self.row_width > MAX_MEMORY_BYTES_PER_STATEMENT:
            raise ValueError(
                f"rows * row_width must be <= {MAX_MEMORY_BYTES_PER_STATEMENT} bytes "
                f"(got {self.rows * self.row_width})"
            )
        return self


INTENSITY_MODELS: dict[WorkloadKind, type[IntensityParams]] = {
    WorkloadKind.CRUD: CrudIntensity,
    WorkloadKind.SLOW_QUERY: SlowQueryIntensity,
    WorkloadKind.CPU_BOMB: CpuBombIntensity,
    WorkloadKind.CONNECTION_BOMB: ConnectionBombIntensity,
    WorkloadKind.ERROR_GENERATOR: ErrorGeneratorIntensity,
    WorkloadKind.MEMORY_TEST: MemoryTestIntensity,
}


class ProfileConfig(BaseModel):
    """
    Configuration for one workload profile.

    Immutable once created; the `intensity` block is validated against the
    model registered for `kind`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=64, description="Profile name")
    kind: WorkloadKind = Field(..., description="Workload pattern")

    concurrency: int = Field(1, ge=1, le=1_000, description="Number of workers")
    pacing_ms: float = Field(
        0.0, ge=0.0, le=3_600_000, description="Think time between iterations"
    )
    target_rate: Optional[float] = Field(
        None, gt=0.0, le=100_000, description="Per-worker operations/second cap"
    )

    max_connections: Optional[int] = Field(
        None, ge=1, description="Per-profile connection ceiling"
    )
    statement_timeout_seconds: float = Field(
        30.0, gt=0.0, le=3_600, description="Client-side per-statement timeout"
    )
    use_reserved_headroom: bool = Field(
        False, description="Allow this profile to use the pool's reserved headroom"
    )
    seed: Optional[int] = Field(None, description="RNG seed for reproducible runs")

    intensity: SerializeAsAny[IntensityParams] = Field(
        default_factory=IntensityParams, description="Kind-specific parameters"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        name = v.strip()
        if not name:
            raise ValueError("name must not be blank")
        return name

    @model_validator(mode="before")
    @classmethod
    def parse_intensity(cls, data: Any) -> Any:
        """Validate the raw intensity block against the model for `kind`."""
        if not isinstance(data, dict):
            return data
        try:
            kind = WorkloadKind(data.get("kind"))
        except ValueError:
            # Let field validation report the bad kind.
            return data

        raw = data.get("intensity")
        model = INTENSITY_MODELS[kind]
        if isinstance(raw, model):
            return data
        if raw is None:
            raw = {}
        if isinstance(raw, IntensityParams):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            raise ValueError("intensity must be a mapping")
        try:
            parsed = model.model_validate(raw)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or kind.value}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(f"invalid {kind.value} intensity: {details}") from None
        return {**data, "intensity": parsed}

    @model_validator(mode="after")
    def validate_profile(self):
        if not isinstance(self.intensity, INTENSITY_MODELS[self.kind]):
            raise ValueError(f"intensity does not match kind '{self.kind.value}'")
        if self.kind == WorkloadKind.SLOW_QUERY:
            longest = self.intensity.longest_sleep()
            if longest >= self.statement_timeout_seconds:
                raise ValueError(
                    f"slow_query sleeps up to {longest}s, which must be below "
                    f"statement_timeout_seconds ({self.statement_timeout_seconds}s)"
                )
        return self

    @property
    def connection_ceiling(self) -> Optional[int]:
        """
        Effective per-profile ceiling.

        A connection bomb without an explicit ceiling is capped at what its
        workers would leak, so it cannot grow without bound.
        """
        if self.max_connections is not None:
            return self.max_connections
        if self.kind == WorkloadKind.CONNECTION_BOMB:
            return self.concurrency * self.intensity.connections_per_worker
        return None
