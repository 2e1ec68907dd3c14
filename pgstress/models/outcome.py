"""
Statement Units and Outcomes

A StatementUnit is one unit of work a generator hands to a worker. An Outcome
is the classified result of executing it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    """Classification of one executed unit."""

    SUCCESS = "success"
    APPLICATION_ERROR = "application_error"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


@dataclass(frozen=True, slots=True)
class StatementUnit:
    """
    One unit of work produced by a generator.

    Attributes:
        sql: Statement text using asyncpg `$N` placeholders ("" when no statement runs)
        args: Positional bind values
        label: Low-cardinality name for logs and counters (e.g. "crud.insert_order")
        fetch: If True, rows are fetched; otherwise only the command status is read
        expect_error: The statement is intentionally invalid
        error_kind: Which kind of invalid statement this is, when expect_error is set
        requires_lease: If False, no connection is acquired for this unit
        retain_lease: Keep the lease after execution instead of releasing it
        release_held: Release every retained lease once this unit completes
        hold_seconds: Cooperative wait performed before the statement runs
    """

    sql: str
    args: tuple[Any, ...] = ()
    label: str = ""
    fetch: bool = False
    expect_error: bool = False
    error_kind: Optional[str] = None
    requires_lease: bool = True
    retain_lease: bool = False
    release_held: bool = False
    hold_seconds: float = 0.0


@dataclass(slots=True)
class Outcome:
    """Result of executing one StatementUnit."""

    kind: OutcomeKind
    label: str = ""
    elapsed_ms: float = 0.0
    error: Optional[BaseException] = None
    error_category: Optional[str] = None
    induced: bool = False
    rowcount: Optional[int] = None
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_infrastructure(self) -> bool:
        return self.kind == OutcomeKind.INFRASTRUCTURE_ERROR

    @property
    def is_application(self) -> bool:
        return self.kind == OutcomeKind.APPLICATION_ERROR
