"""
LabRange - Lab template entities

A lab template is read-only input: the base image, VM sizing, guest
credentials and flag configuration. It never changes during a session.
"""

import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NetworkMode(str, Enum):
    """How a session VM is exposed to the player."""
    ISOLATED = "isolated"  # unique private IP, reachable through the VPN
    NAT = "nat"            # forwarded host ports


class FlagMode(str, Enum):
    """Where a flag value comes from."""
    GENERATED = "generated"  # per-session secret, delivered over SSH
    STATIC = "static"        # baked into the template image


FLAG_NAMES = ("user", "root")

DEFAULT_FLAG_LOCATIONS: Dict[str, List[str]] = {
    "user": ["/home/user/user.txt"],
    "root": ["/root/root.txt"],
}

DEFAULT_FLAG_POINTS: Dict[str, int] = {
    "user": 25,
    "root": 50,
}


class FlagSpec(BaseModel):
    """Configuration of one flag in a lab."""

    model_config = ConfigDict(frozen=True)

    points: int = Field(ge=0)
    locations: List[str] = Field(default_factory=list)
    mode: FlagMode = FlagMode.GENERATED
    value: Optional[str] = None

    @model_validator(mode="after")
    def check_static_value(self) -> "FlagSpec":
        if self.mode == FlagMode.STATIC and not self.value:
            raise ValueError("static flags require a value")
        return self


class VMConfig(BaseModel):
    """Hardware and network sizing for lab VMs."""

    model_config = ConfigDict(frozen=True)

    ram_mb: Optional[int] = Field(default=None, gt=0)
    cpus: Optional[int] = Field(default=None, gt=0)
    network_mode: Optional[NetworkMode] = None


class Credentials(BaseModel):
    """Guest account used for flag delivery and shown to the player."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: Optional[str] = None


def _default_flags() -> Dict[str, FlagSpec]:
    return {
        name: FlagSpec(points=DEFAULT_FLAG_POINTS[name], locations=DEFAULT_FLAG_LOCATIONS[name])
        for name in FLAG_NAMES
    }


class LabTemplate(BaseModel):
    """Lab template record as handed over by the catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    base_image_path: Optional[str] = None
    template_id: Optional[str] = None  # managed base image, set after import
    is_active: bool = True
    vm_config: VMConfig = Field(default_factory=VMConfig)
    credentials: Optional[Credentials] = None
    flags: Dict[str, FlagSpec] = Field(default_factory=_default_flags)

    @model_validator(mode="after")
    def check_flags(self) -> "LabTemplate":
        unknown = set(self.flags) - set(FLAG_NAMES)
        if unknown:
            raise ValueError(f"unknown flag names: {sorted(unknown)}")
        return self

    @property
    def slug(self) -> str:
        """Lowercase alphanumeric form of the lab name."""
        return re.sub(r"[^a-z0-9]", "", self.name.lower()) or "lab"

    def flag_locations(self, flag_name: str) -> List[str]:
        spec = self.flags[flag_name]
        return list(spec.locations) or list(DEFAULT_FLAG_LOCATIONS[flag_name])

    def requires_injection(self) -> bool:
        """True if at least one flag is generated per session."""
        return any(spec.mode == FlagMode.GENERATED for spec in self.flags.values())
