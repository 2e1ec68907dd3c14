"""
Data Models

Pydantic models for profile configuration plus the unit/outcome types
exchanged between generators and workers.
"""

from pgstress.models.outcome import Outcome, OutcomeKind, StatementUnit
from pgstress.models.profile_config import (
    ConnectionBombIntensity,
    CpuBombIntensity,
    CrudIntensity,
    ErrorGeneratorIntensity,
    ErrorKind,
    INTENSITY_MODELS,
    IntensityParams,
    MemoryTestIntensity,
    ProfileConfig,
    SlowQueryIntensity,
    WorkloadKind,
)

__all__ = [
    # Units / outcomes
    "Outcome",
    "OutcomeKind",
    "StatementUnit",
    # Profile configuration
    "ProfileConfig",
    "WorkloadKind",
    "ErrorKind",
    "IntensityParams",
    "INTENSITY_MODELS",
    "CrudIntensity",
    "SlowQueryIntensity",
    "CpuBombIntensity",
    "ConnectionBombIntensity",
    "ErrorGeneratorIntensity",
    "MemoryTestIntensity",
]
