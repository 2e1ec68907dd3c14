"""
Profile Registry

Holds the validated profiles of a scenario. Registration only validates and
records a profile; starting it is the scenario controller's job.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from pgstress.core.errors import ConfigurationError
from pgstress.models.profile_config import ProfileConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileHandle:
    """Identity of a registered profile."""

    profile_id: int
    name: str
    config: ProfileConfig


def format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class ProfileRegistry:
    def __init__(
        self,
        *,
        stress_capacity: Optional[int] = None,
        max_connections: Optional[int] = None,
        statement_timeout_seconds: Optional[float] = None,
    ) -> None:
        """
        Args:
            stress_capacity: Connections stress profiles may lease in total;
                used to reject per-profile ceilings that can never be reached
            max_connections: Global ceiling, the bound for profiles allowed
                to use the reserved headroom
            statement_timeout_seconds: Timeout applied to profile documents
                that do not set their own
        """
        self.stress_capacity = stress_capacity
        self.max_connections = max_connections
        self.statement_timeout_seconds = statement_timeout_seconds
        self._profiles: dict[str, ProfileHandle] = {}
        self._ids = itertools.count(1)

    def register(self, config: Union[ProfileConfig, dict[str, Any]]) -> ProfileHandle:
        """
        Validate and record a profile.

        Documents (dicts) without `statement_timeout_seconds` get the
        registry's default; ProfileConfig instances are taken as they are.

        Raises:
            ConfigurationError: The profile is invalid or its name is taken
        """
        if not isinstance(config, ProfileConfig):
            name = config.get("name") if isinstance(config, dict) else None
            if (
                isinstance(config, dict)
                and self.statement_timeout_seconds is not None
                and "statement_timeout_seconds" not in config
            ):
                config = {**config, "statement_timeout_seconds": self.statement_timeout_seconds}
            try:
                config = ProfileConfig.model_validate(config)
            except ValidationError as e:
                label = f"profile '{name}'" if name else "profile"
                raise ConfigurationError(
                    f"invalid {label}: {format_validation_error(e)}"
                ) from None

        if config.name in self._profiles:
            raise ConfigurationError(f"profile '{config.name}' is already registered")

        self._check_ceiling(config)

        handle = ProfileHandle(
            profile_id=next(self._ids), name=config.name, config=config
        )
        self._profiles[config.name] = handle
        logger.info(
            f"Registered profile '{config.name}' ({config.kind.value}, "
            f"concurrency={config.concurrency})"
        )
        return handle

    def _check_ceiling(self, config: ProfileConfig) -> None:
        limit = config.max_connections
        if limit is None:
            return
        bound = self.max_connections if config.use_reserved_headroom else self.stress_capacity
        if bound is not None and limit > bound:
            scope = "max_connections" if config.use_reserved_headroom else "stress capacity"
            raise ConfigurationError(
                f"profile '{config.name}': max_connections={limit} exceeds the "
                f"connection manager's {scope} ({bound})"
            )

    def list(self) -> list[ProfileHandle]:
        """Registered profiles, in registration order."""
        return list(self._profiles.values())

    def get(self, name: str) -> ProfileHandle:
        try:
            return self._profiles[name]
        except KeyError:
            raise ConfigurationError(f"unknown profile '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def register_many(
        self, configs: Iterable[Union[ProfileConfig, dict[str, Any]]]
    ) -> tuple[list[ProfileHandle], list[str]]:
        """Register every profile, collecting errors instead of stopping at the first."""
        handles: list[ProfileHandle] = []
        errors: list[str] = []
        for config in configs:
            try:
                handles.append(self.register(config))
            except ConfigurationError as e:
                logger.error(str(e))
                errors.append(str(e))
        return handles, errors

    def load_file(self, path: Union[str, Path]) -> tuple[list[ProfileHandle], list[str]]:
        """
        Register the profiles of a JSON document.

        The document is either a list of profile objects or an object with a
        `profiles` list.

        Raises:
            ConfigurationError: The file cannot be read or is not such a document
        """
        p = Path(path)
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"cannot read profiles file {p}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"profiles file {p} is not valid JSON: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("profiles")
        if not isinstance(raw, list):
            raise ConfigurationError(
                f"profiles file {p} must be a list or an object with a 'profiles' list"
            )
        return self.register_many(raw)
