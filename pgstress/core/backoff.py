"""Capped exponential backoff for infrastructure-level failures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Backoff:
    """Exponential backoff with a ceiling.

    Delays after consecutive failures are non-decreasing and never exceed
    `max_seconds`; `reset()` after a success returns to `base_seconds`.

    Attributes:
        base_seconds: First delay after a failure
        max_seconds: Ceiling for any delay
        factor: Multiplier applied per consecutive failure
    """

    base_seconds: float = 0.1
    max_seconds: float = 5.0
    factor: float = 2.0
    consecutive_failures: int = field(default=0, init=False)
    _current: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if self.factor < 1.0:
            raise ValueError("factor must be >= 1.0")

    @property
    def current(self) -> float:
        """Delay most recently handed out (0 when no failure is pending)."""
        return self._current

    def next_delay(self) -> float:
        """Record one more failure and return the delay to wait before retrying."""
        self.consecutive_failures += 1
        if self._current <= 0:
            self._current = self.base_seconds
        else:
            self._current = min(self.max_seconds, self._current * self.factor)
        return self._current

    def reset(self) -> None:
        self.consecutive_failures = 0
        self._current = 0.0
