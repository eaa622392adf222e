"""
Orchestrator Models - Data classes for VM instances, network reservations and
flag delivery results
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from labrange.domain.labs.entities import NetworkMode
from labrange.domain.sessions.entities import InjectionStatus, utcnow


class InstanceState(str, Enum):
    """VM instance lifecycle states."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETED = "deleted"
    FAILED = "failed"


class DomainState(str, Enum):
    """Domain states as reported by the hypervisor."""
    RUNNING = "running"
    SHUT_OFF = "shut off"
    PAUSED = "paused"
    IN_SHUTDOWN = "in shutdown"
    CRASHED = "crashed"
    BLOCKED = "blocked"
    PMSUSPENDED = "pmsuspended"
    NOT_FOUND = "not found"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str) -> "DomainState":
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    def to_instance_state(self) -> InstanceState:
        if self is DomainState.RUNNING:
            return InstanceState.RUNNING
        if self in (DomainState.SHUT_OFF, DomainState.PAUSED, DomainState.IN_SHUTDOWN, DomainState.PMSUSPENDED):
            return InstanceState.STOPPED
        if self is DomainState.NOT_FOUND:
            return InstanceState.DELETED
        return InstanceState.FAILED


@dataclass(frozen=True)
class IsolatedReservation:
    """Unique private address on the isolated lab network."""
    mode: ClassVar[NetworkMode] = NetworkMode.ISOLATED

    session_id: str
    ip: str
    network_name: str
    subnet: str
    gateway: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "session_id": self.session_id,
            "ip": self.ip,
            "network_name": self.network_name,
            "subnet": self.subnet,
            "gateway": self.gateway,
        }


@dataclass(frozen=True)
class NatReservation:
    """Pair of forwarded host ports."""
    mode: ClassVar[NetworkMode] = NetworkMode.NAT

    session_id: str
    host: str
    ssh_port: int
    web_port: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "session_id": self.session_id,
            "host": self.host,
            "ssh_port": self.ssh_port,
            "web_port": self.web_port,
        }


NetworkReservation = Union[IsolatedReservation, NatReservation]


@dataclass
class InstanceConfig:
    """Per-session VM sizing."""
    ram_mb: int = 1024
    cpus: int = 1
    network_mode: NetworkMode = NetworkMode.ISOLATED
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class DomainSpec:
    """Everything the hypervisor needs to define a domain."""
    name: str
    disk_path: str
    mac_address: str
    ram_mb: int
    cpus: int
    network_name: str


@dataclass
class VMInstance:
    """Registry record for one session VM."""
    session_id: str
    instance_id: str
    template_id: str
    overlay_path: str
    mac_address: str
    reservation: Optional[NetworkReservation] = None
    config: InstanceConfig = field(default_factory=InstanceConfig)
    state: InstanceState = InstanceState.PROVISIONING
    resolved_address: Optional[str] = None
    defined: bool = False

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    def update_state(self, state: InstanceState) -> None:
        """Update state with timestamp tracking."""
        self.state = state
        if state == InstanceState.RUNNING:
            self.started_at = utcnow()
        elif state == InstanceState.STOPPED:
            self.stopped_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "instance_id": self.instance_id,
            "template_id": self.template_id,
            "overlay_path": self.overlay_path,
            "mac_address": self.mac_address,
            "reservation": self.reservation.to_dict() if self.reservation else None,
            "state": self.state.value,
            "resolved_address": self.resolved_address,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }


@dataclass
class CreateInstanceResult:
    """Result of creating a session VM."""
    instance_id: str
    reservation: NetworkReservation


@dataclass
class ExecResult:
    """Output of one remote shell command."""
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class InjectionResult:
    """Outcome of delivering a session's flags into its VM."""
    status: InjectionStatus
    delivered: Dict[str, bool] = field(default_factory=dict)
    locations: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (
            InjectionStatus.COMPLETED,
            InjectionStatus.PARTIAL,
            InjectionStatus.NOT_REQUIRED,
        )

    @property
    def warnings(self) -> List[str]:
        return list(self.errors) if self.status == InjectionStatus.PARTIAL else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "delivered": dict(self.delivered),
            "locations": dict(self.locations),
            "errors": list(self.errors),
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class ValidationResult:
    """Outcome of checking a submitted flag value."""
    valid: bool
    points: int = 0
    flag_name: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "points": self.points,
            "flag_name": self.flag_name,
            "message": self.message,
        }
