"""Orchestrator services."""

from .flag_engine import FlagEngine
from .hypervisor import VirshHypervisor
from .network_allocator import NetworkAllocator
from .session_manager import SessionManager, StartSessionResult
from .vm_manager import VMManager

__all__ = [
    "FlagEngine",
    "VirshHypervisor",
    "NetworkAllocator",
    "SessionManager",
    "StartSessionResult",
    "VMManager",
]
