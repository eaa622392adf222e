"""Lab template domain."""

from .entities import (
    Credentials,
    FlagMode,
    FlagSpec,
    LabTemplate,
    NetworkMode,
    VMConfig,
)

__all__ = [
    "Credentials",
    "FlagMode",
    "FlagSpec",
    "LabTemplate",
    "NetworkMode",
    "VMConfig",
]
