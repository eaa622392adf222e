"""Session domain."""

from .entities import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ConnectionInfo,
    Endpoint,
    FlagState,
    InjectionStatus,
    Session,
    SessionStatus,
    StopReason,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ConnectionInfo",
    "Endpoint",
    "FlagState",
    "InjectionStatus",
    "Session",
    "SessionStatus",
    "StopReason",
]
