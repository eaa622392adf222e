"""
Network Allocator - per-session network identity

Isolated mode derives a private address from the session id; NAT mode hands
out forwarded host ports from a shared pool.
"""

import hashlib
import ipaddress
from typing import Optional, assert_never

import structlog

from labrange.core.config import Settings
from labrange.domain.labs.entities import NetworkMode
from labrange.domain.sessions.entities import ConnectionInfo, Endpoint

from .. import metrics
from ..models import IsolatedReservation, NatReservation, NetworkReservation
from ..registry import PortPool

logger = structlog.get_logger(__name__)

# Services exposed on the guest's own address in isolated mode
ISOLATED_SERVICES = {
    "ssh": 22,
    "web": 80,
    "https": 443,
    "ftp": 21,
    "mysql": 3306,
    "rdp": 3389,
    "smb": 445,
    "telnet": 23,
}


def derive_mac_address(session_id: str) -> str:
    """Deterministic MAC in the QEMU/KVM locally administered range."""
    digest = hashlib.sha256(session_id.encode()).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


class NetworkAllocator:
    """Assigns and releases network identities for sessions."""

    def __init__(self, settings: Settings, port_pool: Optional[PortPool] = None):
        self.settings = settings
        self.port_pool = port_pool or PortPool()

        self._subnet = ipaddress.ip_network(settings.isolated_subnet)
        self._gateway = str(self._subnet.network_address + 1)
        self._pool_start = settings.isolated_pool_start
        self._pool_size = settings.isolated_pool_size
        if self._pool_start + self._pool_size > self._subnet.num_addresses - 1:
            raise ValueError("Isolated address pool does not fit in subnet")

    def derive_ip(self, session_id: str) -> str:
        """Hash the session id onto the isolated address pool."""
        digest = hashlib.sha256(session_id.encode()).digest()
        offset = int.from_bytes(digest[:4], "big") % self._pool_size
        return str(self._subnet.network_address + self._pool_start + offset)

    def isolated_reservation(self, session_id: str) -> IsolatedReservation:
        return IsolatedReservation(
            session_id=session_id,
            ip=self.derive_ip(session_id),
            network_name=self.settings.isolated_network_name,
            subnet=str(self._subnet),
            gateway=self._gateway,
        )

    def reserve(self, session_id: str, mode: NetworkMode) -> NetworkReservation:
        """
        Reserve a network identity for a session.

        Raises:
            CapacityError: NAT mode with an exhausted port range
        """
        if mode == NetworkMode.ISOLATED:
            reservation = self.isolated_reservation(session_id)
            logger.info("Isolated address assigned", session_id=session_id, ip=reservation.ip)
            return reservation

        if mode == NetworkMode.NAT:
            ssh_port, web_port = self.port_pool.acquire_pair(
                self.settings.ssh_port_range,
                self.settings.web_port_range,
            )
            metrics.ports_allocated.set(len(self.port_pool.allocated))
            logger.info(
                "NAT ports allocated",
                session_id=session_id,
                ssh_port=ssh_port,
                web_port=web_port,
            )
            return NatReservation(
                session_id=session_id,
                host=self.settings.nat_host,
                ssh_port=ssh_port,
                web_port=web_port,
            )

        raise ValueError(f"Unknown network mode: {mode}")

    def restore(self, session_id: str, connection_info: ConnectionInfo) -> NetworkReservation:
        """
        Rebuild the reservation of a VM created by an earlier process.

        NAT ports are taken from the persisted connection info and marked
        allocated again so new sessions cannot be handed the same ports.
        """
        if connection_info.mode == NetworkMode.ISOLATED:
            return self.isolated_reservation(session_id)

        if connection_info.mode == NetworkMode.NAT:
            reservation = NatReservation(
                session_id=session_id,
                host=connection_info.host,
                ssh_port=connection_info.ssh_port,
                web_port=connection_info.web_port,
            )
            self.port_pool.acquire_ports((reservation.ssh_port, reservation.web_port))
            metrics.ports_allocated.set(len(self.port_pool.allocated))
            logger.info(
                "NAT ports restored",
                session_id=session_id,
                ssh_port=reservation.ssh_port,
                web_port=reservation.web_port,
            )
            return reservation

        raise ValueError(f"Unknown network mode: {connection_info.mode}")

    def release(self, reservation: NetworkReservation) -> None:
        """Return a reservation. Isolated addresses are computed, so only logged."""
        if isinstance(reservation, NatReservation):
            self.port_pool.release((reservation.ssh_port, reservation.web_port))
            metrics.ports_allocated.set(len(self.port_pool.allocated))
            logger.info(
                "NAT ports released",
                session_id=reservation.session_id,
                ssh_port=reservation.ssh_port,
                web_port=reservation.web_port,
            )
        elif isinstance(reservation, IsolatedReservation):
            logger.info(
                "Isolated address released",
                session_id=reservation.session_id,
                ip=reservation.ip,
            )
        else:
            assert_never(reservation)

    def build_connection_info(
        self,
        reservation: NetworkReservation,
        resolved_address: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> ConnectionInfo:
        """Connection details for a reservation; every mode is handled explicitly."""
        if isinstance(reservation, IsolatedReservation):
            address = resolved_address or reservation.ip
            management = None
            if self.settings.isolated_management_direct:
                management = Endpoint(host=address, port=ISOLATED_SERVICES["ssh"])
            return ConnectionInfo(
                mode=NetworkMode.ISOLATED,
                host=address,
                ssh_port=ISOLATED_SERVICES["ssh"],
                web_port=ISOLATED_SERVICES["web"],
                web_ports=[80, 443, 8080, 8443],
                services=dict(ISOLATED_SERVICES),
                username=username,
                password=password,
                vpn_required=True,
                management=management,
            )

        if isinstance(reservation, NatReservation):
            return ConnectionInfo(
                mode=NetworkMode.NAT,
                host=reservation.host,
                ssh_port=reservation.ssh_port,
                web_port=reservation.web_port,
                web_ports=[reservation.web_port],
                services={"ssh": reservation.ssh_port, "web": reservation.web_port},
                username=username,
                password=password,
                vpn_required=False,
                management=Endpoint(host=reservation.host, port=reservation.ssh_port),
            )

        assert_never(reservation)
