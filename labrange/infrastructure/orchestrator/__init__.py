"""
LabRange - Session Orchestrator

Per-session KVM lab machines:
- Session lifecycle with expiry timers and a cleanup sweep
- Copy-on-write VM instances managed through libvirt
- Isolated (private IP) or NAT (forwarded ports) networking
- Per-session flags delivered over SSH
"""

from .factory import Orchestrator, build_orchestrator
from .services.flag_engine import FlagEngine
from .services.network_allocator import NetworkAllocator
from .services.session_manager import SessionManager
from .services.vm_manager import VMManager

__all__ = [
    "Orchestrator",
    "build_orchestrator",
    "FlagEngine",
    "NetworkAllocator",
    "SessionManager",
    "VMManager",
]
