"""
Orchestrator wiring

Builds every component explicitly from Settings; nothing is a module-level
singleton, so tests and the CLI can assemble their own graphs.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import structlog

from labrange.core.config import Settings
from labrange.infrastructure.cache import CacheManager
from labrange.infrastructure.database import DatabaseManager

from .registry import InstanceRegistry, PortPool
from .services.flag_engine import FlagEngine
from .services.hypervisor import Hypervisor, VirshHypervisor
from .services.lab_catalog import InMemoryLabCatalog, LabCatalog
from .services.network_allocator import NetworkAllocator
from .services.notifications import LogNotificationSink, NotificationSink, RedisNotificationSink
from .services.reachability import ReachabilityProbe, TcpReachabilityProbe
from .services.remote_shell import AsyncSSHRemoteShell, RemoteShell
from .services.repository import InMemorySessionRepository, SessionRepository, SqlSessionRepository
from .services.session_manager import SessionManager
from .services.vm_manager import VMManager

logger = structlog.get_logger(__name__)


@dataclass
class Orchestrator:
    """The assembled component graph."""
    settings: Settings
    sessions: SessionManager
    vms: VMManager
    flags: FlagEngine
    network: NetworkAllocator
    registry: InstanceRegistry
    port_pool: PortPool
    db: Optional[DatabaseManager] = None
    cache: Optional[CacheManager] = None

    async def start(self) -> None:
        """Connect backing services and start background tasks."""
        if self.db is not None:
            await self.db.connect()
            await self.db.create_schema()
        if self.cache is not None:
            await self.cache.connect()
        await self.sessions.start()
        logger.info("Orchestrator started")

    async def shutdown(self) -> None:
        """Stop every session, then disconnect backing services."""
        await self.sessions.shutdown()
        if self.cache is not None:
            await self.cache.disconnect()
        if self.db is not None:
            await self.db.disconnect()
        logger.info("Orchestrator stopped")

    async def health(self) -> Dict[str, Any]:
        """Session counts plus the state of the backing services."""
        return {
            "sessions": await self.sessions.get_system_status(),
            "database": await self.db.health_check() if self.db is not None else {"status": "disabled"},
            "cache": await self.cache.health_check() if self.cache is not None else {"status": "disabled"},
        }


def build_orchestrator(
    settings: Settings,
    *,
    lab_catalog: Optional[LabCatalog] = None,
    labs: Iterable = (),
    hypervisor: Optional[Hypervisor] = None,
    remote_shell: Optional[RemoteShell] = None,
    probe: Optional[ReachabilityProbe] = None,
    repository: Optional[SessionRepository] = None,
    notifications: Optional[NotificationSink] = None,
) -> Orchestrator:
    """
    Assemble the orchestrator.

    Any collaborator can be passed in; the rest are built from settings.
    """
    registry = InstanceRegistry()
    port_pool = PortPool()

    db: Optional[DatabaseManager] = None
    if repository is None:
        if settings.persistence_backend == "database":
            db = DatabaseManager(settings)
            repository = SqlSessionRepository(db)
        else:
            repository = InMemorySessionRepository()

    cache: Optional[CacheManager] = None
    if notifications is None:
        if settings.notifications_backend == "redis":
            cache = CacheManager(settings)
            notifications = RedisNotificationSink(cache, settings.notification_channel)
        else:
            notifications = LogNotificationSink()

    network = NetworkAllocator(settings, port_pool)
    vms = VMManager(
        settings,
        hypervisor or VirshHypervisor(settings),
        network,
        registry,
    )
    flags = FlagEngine(
        settings,
        remote_shell or AsyncSSHRemoteShell(
            connect_timeout=settings.ssh_connect_timeout_seconds,
            command_timeout=settings.ssh_command_timeout_seconds,
        ),
    )
    sessions = SessionManager(
        settings,
        vm_manager=vms,
        flag_engine=flags,
        lab_catalog=lab_catalog or InMemoryLabCatalog(labs),
        repository=repository,
        notifications=notifications,
        probe=probe or TcpReachabilityProbe(
            timeout=settings.reachability_timeout_seconds,
            interval=settings.reachability_poll_interval_seconds,
            connect_timeout=settings.reachability_connect_timeout_seconds,
        ),
    )

    logger.debug(
        "Orchestrator assembled",
        persistence=settings.persistence_backend,
        notifications=settings.notifications_backend,
    )
    return Orchestrator(
        settings=settings,
        sessions=sessions,
        vms=vms,
        flags=flags,
        network=network,
        registry=registry,
        port_pool=port_pool,
        db=db,
        cache=cache,
    )
