"""
Resource registries - explicit owners of shared mutable orchestration state

Both registries guard their maps with a lock so they can be shared between
components (and threads, for the CLI) without ambient module-level state.
"""

import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog

from labrange.core.exceptions import CapacityError, ConflictError

from .models import VMInstance

logger = structlog.get_logger(__name__)


class InstanceRegistry:
    """Tracks session_id -> VM instance record."""

    def __init__(self) -> None:
        self._instances: Dict[str, VMInstance] = {}
        self._lock = threading.Lock()

    def claim(self, instance: VMInstance) -> None:
        """
        Register a new record, failing if the session already has one.

        Raises:
            ConflictError: if the session id is already registered
        """
        with self._lock:
            if instance.session_id in self._instances:
                raise ConflictError(
                    "Session already has a VM instance",
                    session_id=instance.session_id,
                )
            self._instances[instance.session_id] = instance

    def get(self, session_id: str) -> Optional[VMInstance]:
        with self._lock:
            return self._instances.get(session_id)

    def pop(self, session_id: str) -> Optional[VMInstance]:
        with self._lock:
            return self._instances.pop(session_id, None)

    def discard(self, session_id: str, instance: VMInstance) -> None:
        """Remove the record only if it is still the given instance."""
        with self._lock:
            if self._instances.get(session_id) is instance:
                del self._instances[session_id]

    def snapshot(self) -> List[VMInstance]:
        with self._lock:
            return list(self._instances.values())

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._instances

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)


class PortPool:
    """Set of host ports currently forwarded to session VMs."""

    def __init__(self) -> None:
        self._allocated: Set[int] = set()
        self._lock = threading.Lock()

    def acquire_pair(self, first: Tuple[int, int], second: Tuple[int, int]) -> Tuple[int, int]:
        """
        Atomically take the lowest free port from each inclusive range.

        Raises:
            CapacityError: if either range has no free port (nothing is kept)
        """
        with self._lock:
            a = self._lowest_free(first)
            if a is None:
                raise CapacityError("No free port in range", port_range=list(first))
            b = self._lowest_free(second)
            if b is None:
                raise CapacityError("No free port in range", port_range=list(second))
            self._allocated.update((a, b))
            return a, b

    def acquire_ports(self, ports: Iterable[int]) -> None:
        """Mark specific ports as taken, e.g. when re-adopting a running VM."""
        with self._lock:
            self._allocated.update(ports)

    def release(self, ports: Iterable[int]) -> None:
        with self._lock:
            for port in ports:
                self._allocated.discard(port)

    @property
    def allocated(self) -> Set[int]:
        with self._lock:
            return set(self._allocated)

    def _lowest_free(self, port_range: Tuple[int, int]) -> Optional[int]:
        start, end = port_range
        for port in range(start, end + 1):
            if port not in self._allocated:
                return port
        return None
