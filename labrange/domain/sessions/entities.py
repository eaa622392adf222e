"""
LabRange - Session domain entities

A session binds one user, one lab and one VM for a bounded lifetime.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from labrange.core.exceptions import InvalidTransitionError
from labrange.domain.labs.entities import NetworkMode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SessionStatus(str, Enum):
    """Session lifecycle statuses."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    EXPIRED = "expired"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})
TERMINAL_STATUSES = frozenset({SessionStatus.STOPPED, SessionStatus.EXPIRED, SessionStatus.FAILED})

_ALLOWED_TRANSITIONS = {
    SessionStatus.STARTING: {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.STOPPED, SessionStatus.EXPIRED},
    SessionStatus.RUNNING: {SessionStatus.STOPPED, SessionStatus.EXPIRED},
    SessionStatus.STOPPED: set(),
    SessionStatus.EXPIRED: set(),
    SessionStatus.FAILED: set(),
}


class StopReason(str, Enum):
    """Why a session is being stopped."""
    USER_REQUESTED = "user_requested"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    ADMIN_ACTION = "admin_action"
    SHUTDOWN = "shutdown"

    @property
    def terminal_status(self) -> SessionStatus:
        if self is StopReason.EXPIRED:
            return SessionStatus.EXPIRED
        return SessionStatus.STOPPED


class InjectionStatus(str, Enum):
    """Outcome of delivering flags into the guest."""
    PENDING = "pending"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"


@dataclass(frozen=True)
class Endpoint:
    """Host/port pair."""
    host: str
    port: int

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port}


@dataclass
class ConnectionInfo:
    """How the player (and the orchestrator) reaches a session VM."""
    mode: NetworkMode
    host: str
    ssh_port: int
    web_port: int
    web_ports: List[int] = field(default_factory=list)
    services: Dict[str, int] = field(default_factory=dict)
    username: Optional[str] = None
    password: Optional[str] = None
    vpn_required: bool = False
    # Channel the orchestrator uses for flag delivery; never shown to players
    management: Optional[Endpoint] = None

    @property
    def ssh_command(self) -> str:
        user = f"{self.username}@" if self.username else ""
        if self.ssh_port == 22:
            return f"ssh {user}{self.host}"
        return f"ssh {user}{self.host} -p {self.ssh_port}"

    @property
    def web_url(self) -> str:
        if self.web_port == 80:
            return f"http://{self.host}"
        return f"http://{self.host}:{self.web_port}"

    def to_dict(self, include_private: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mode": self.mode.value,
            "host": self.host,
            "ssh_port": self.ssh_port,
            "web_port": self.web_port,
            "web_ports": list(self.web_ports),
            "services": dict(self.services),
            "username": self.username,
            "ssh_command": self.ssh_command,
            "web_url": self.web_url,
            "vpn_required": self.vpn_required,
        }
        if include_private:
            data["password"] = self.password
            data["management"] = self.management.to_dict() if self.management else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionInfo":
        management = data.get("management")
        return cls(
            mode=NetworkMode(data["mode"]),
            host=data["host"],
            ssh_port=data["ssh_port"],
            web_port=data["web_port"],
            web_ports=list(data.get("web_ports") or []),
            services=dict(data.get("services") or {}),
            username=data.get("username"),
            password=data.get("password"),
            vpn_required=data.get("vpn_required", False),
            management=Endpoint(**management) if management else None,
        )


@dataclass
class FlagState:
    """Stored value and submission state of one session flag."""
    value: str
    points: int
    submitted: bool = False
    correct: bool = False
    submitted_at: Optional[datetime] = None

    def to_dict(self, include_value: bool = True) -> Dict[str, Any]:
        data = {
            "points": self.points,
            "submitted": self.submitted,
            "correct": self.correct,
            "submitted_at": _iso(self.submitted_at),
        }
        if include_value:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagState":
        return cls(
            value=data["value"],
            points=data["points"],
            submitted=data.get("submitted", False),
            correct=data.get("correct", False),
            submitted_at=_parse(data.get("submitted_at")),
        )


@dataclass
class Session:
    """
    A user's claim on one lab VM.

    The orchestrator keeps the authoritative copy in memory while the session
    is active; the repository holds it for durability.
    """
    session_id: str
    user_id: str
    lab_id: str
    status: SessionStatus = SessionStatus.STARTING

    connection_info: Optional[ConnectionInfo] = None
    flags: Dict[str, FlagState] = field(default_factory=dict)

    started_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_activity_at: datetime = field(default_factory=utcnow)
    duration_seconds: Optional[float] = None

    extensions_used: int = 0
    stop_reason: Optional[StopReason] = None
    failure_reason: Optional[str] = None
    injection_status: InjectionStatus = InjectionStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def is_idle(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        return ((now or utcnow()) - self.last_activity_at).total_seconds() > threshold_seconds

    def transition(self, status: SessionStatus) -> None:
        """Move to a new status, enforcing the lifecycle table."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move session from {self.status.value} to {status.value}",
                session_id=self.session_id,
            )
        self.status = status
        if status in TERMINAL_STATUSES:
            self.ended_at = utcnow()
            self.duration_seconds = (self.ended_at - self.started_at).total_seconds()

    def touch(self) -> None:
        self.last_activity_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Full representation, used for persistence."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "lab_id": self.lab_id,
            "status": self.status.value,
            "connection_info": self.connection_info.to_dict() if self.connection_info else None,
            "flags": {name: state.to_dict() for name, state in self.flags.items()},
            "started_at": _iso(self.started_at),
            "expires_at": _iso(self.expires_at),
            "ended_at": _iso(self.ended_at),
            "last_activity_at": _iso(self.last_activity_at),
            "duration_seconds": self.duration_seconds,
            "extensions_used": self.extensions_used,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "failure_reason": self.failure_reason,
            "injection_status": self.injection_status.value,
            "metadata": dict(self.metadata),
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to hand to the player: no flag values or management channel."""
        data = self.to_dict()
        data["connection_info"] = (
            self.connection_info.to_dict(include_private=False) if self.connection_info else None
        )
        data["flags"] = {name: state.to_dict(include_value=False) for name, state in self.flags.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        connection_info = data.get("connection_info")
        stop_reason = data.get("stop_reason")
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            lab_id=data["lab_id"],
            status=SessionStatus(data["status"]),
            connection_info=ConnectionInfo.from_dict(connection_info) if connection_info else None,
            flags={name: FlagState.from_dict(state) for name, state in (data.get("flags") or {}).items()},
            started_at=_parse(data["started_at"]),
            expires_at=_parse(data.get("expires_at")),
            ended_at=_parse(data.get("ended_at")),
            last_activity_at=_parse(data.get("last_activity_at")) or utcnow(),
            duration_seconds=data.get("duration_seconds"),
            extensions_used=data.get("extensions_used", 0),
            stop_reason=StopReason(stop_reason) if stop_reason else None,
            failure_reason=data.get("failure_reason"),
            injection_status=InjectionStatus(data.get("injection_status", InjectionStatus.PENDING.value)),
            metadata=dict(data.get("metadata") or {}),
        )
