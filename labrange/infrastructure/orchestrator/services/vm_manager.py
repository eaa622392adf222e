"""
VM Lifecycle Manager - Per-session KVM instances

Handles:
- Template import into the managed base image store
- Copy-on-write overlay creation per session
- Domain define/start/stop/delete through the hypervisor
- Address resolution from the DHCP lease table
- Rollback of partial allocations on failure
"""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from labrange.core.config import Settings
from labrange.core.exceptions import (
    CapacityError,
    ConflictError,
    HypervisorError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
    VMTimeoutError,
)
from labrange.domain.labs.entities import LabTemplate, NetworkMode
from labrange.domain.sessions.entities import ConnectionInfo

from ..models import (
    CreateInstanceResult,
    DomainSpec,
    DomainState,
    InstanceConfig,
    InstanceState,
    IsolatedReservation,
    VMInstance,
)
from ..registry import InstanceRegistry
from .hypervisor import Hypervisor
from .network_allocator import NetworkAllocator, derive_mac_address
from .retry import wait_until

logger = structlog.get_logger(__name__)

QCOW2_MAGIC = b"QFI\xfb"


class VMManager:
    """
    Owns the lifecycle of session VMs.

    Many sessions share one read-only base image per lab; each session only
    gets a qcow2 overlay holding its own writes.
    """

    DOMAIN_PREFIX = "Session-"

    def __init__(
        self,
        settings: Settings,
        hypervisor: Hypervisor,
        allocator: NetworkAllocator,
        registry: Optional[InstanceRegistry] = None,
    ):
        self.settings = settings
        self.hypervisor = hypervisor
        self.allocator = allocator
        self.registry = registry or InstanceRegistry()

        self.templates_dir = Path(settings.templates_dir)
        self.sessions_dir = Path(settings.sessions_dir)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._template_locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        """Get or create a lock for a session VM."""
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    async def check_host(self) -> Dict[str, Any]:
        """Verify hypervisor tooling and create the managed directories."""
        version = await self.hypervisor.check_available()
        for directory in (self.templates_dir, self.sessions_dir):
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        logger.info(
            "Hypervisor host ready",
            version=version,
            templates_dir=str(self.templates_dir),
            sessions_dir=str(self.sessions_dir),
        )
        return {
            "version": version,
            "templates_dir": str(self.templates_dir),
            "sessions_dir": str(self.sessions_dir),
        }

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def template_path(self, lab: LabTemplate) -> Path:
        return self.templates_dir / f"{lab.slug}-base.qcow2"

    async def import_template(self, image_path: str, lab: LabTemplate) -> str:
        """
        Import a qcow2 image as the lab's base image.

        Args:
            image_path: Path to the uploaded qcow2 image
            lab: Lab the template belongs to

        Returns:
            Template id (path of the managed base image)

        Raises:
            NotFoundError: image does not exist
            ValidationError: not a regular qcow2 file
        """
        source = Path(image_path)
        await asyncio.to_thread(_verify_image, source)

        destination = self.template_path(lab)
        key = str(destination)
        if key not in self._template_locks:
            self._template_locks[key] = asyncio.Lock()

        async with self._template_locks[key]:
            if await asyncio.to_thread(destination.is_file):
                logger.info("Base image already imported", template_id=key, lab_id=lab.id)
                return key

            await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
            partial = destination.with_name(destination.name + ".part")
            logger.info("Importing base image", source=str(source), template_id=key)
            try:
                await asyncio.to_thread(shutil.copyfile, source, partial)
                await asyncio.to_thread(os.replace, partial, destination)
            except OSError as e:
                await asyncio.to_thread(partial.unlink, missing_ok=True)
                raise ProvisioningError(f"Base image import failed: {e}", lab_id=lab.id) from e

        logger.info("Base image imported", template_id=key, lab_id=lab.id)
        return key

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        template_id: str,
        session_id: str,
        config: InstanceConfig,
    ) -> CreateInstanceResult:
        """
        Create and boot a VM for a session.

        Raises:
            NotFoundError: template missing
            ConflictError: session already has (or is creating) an instance
            CapacityError: no network identity left
            ProvisioningError: hypervisor failure (after rollback)
        """
        if not await asyncio.to_thread(Path(template_id).is_file):
            raise NotFoundError("Base image not found", template_id=template_id)

        overlay_path = str(self.sessions_dir / f"{session_id}.qcow2")
        instance = VMInstance(
            session_id=session_id,
            instance_id=f"{self.DOMAIN_PREFIX}{session_id}",
            template_id=template_id,
            overlay_path=overlay_path,
            mac_address=derive_mac_address(session_id),
            config=config,
        )

        # Claiming is synchronous, so a concurrent duplicate fails right here
        self.registry.claim(instance)

        async with self._get_lock(session_id):
            overlay_created = False
            define_attempted = False
            try:
                if await asyncio.to_thread(Path(overlay_path).exists):
                    raise ConflictError("Overlay disk already exists", overlay_path=overlay_path)

                instance.reservation = self.allocator.reserve(session_id, config.network_mode)

                # A cancelled create can still leave a partial overlay behind
                overlay_created = True
                await self.hypervisor.create_overlay(template_id, overlay_path)

                spec = DomainSpec(
                    name=instance.instance_id,
                    disk_path=overlay_path,
                    mac_address=instance.mac_address,
                    ram_mb=config.ram_mb,
                    cpus=config.cpus,
                    network_name=self._network_name(config.network_mode),
                )
                define_attempted = True
                instance.instance_id = await self.hypervisor.define_and_start(spec)
                instance.defined = True

            except asyncio.CancelledError:
                logger.warning("Instance creation cancelled, rolling back", session_id=session_id)
                await self._rollback(instance, overlay_created, define_attempted)
                raise

            except (CapacityError, ConflictError):
                await self._rollback(instance, overlay_created, define_attempted)
                raise

            except Exception as e:
                logger.error(
                    "Instance creation failed, rolling back",
                    session_id=session_id,
                    error=str(e),
                )
                await self._rollback(instance, overlay_created, define_attempted)
                raise ProvisioningError(f"Instance creation failed: {e}", session_id=session_id) from e

        logger.info(
            "Instance created",
            session_id=session_id,
            instance_id=instance.instance_id,
            mac_address=instance.mac_address,
            mode=instance.reservation.mode.value,
        )
        return CreateInstanceResult(instance_id=instance.instance_id, reservation=instance.reservation)

    def adopt_instance(self, session_id: str, connection_info: Optional[ConnectionInfo] = None) -> VMInstance:
        """
        Track a VM created by an earlier process so it can be torn down.

        The domain name, overlay path and MAC all derive from the session id.
        The network reservation is rebuilt from the persisted connection info
        when provisioning got that far.
        """
        existing = self.registry.get(session_id)
        if existing is not None:
            return existing

        instance = VMInstance(
            session_id=session_id,
            instance_id=f"{self.DOMAIN_PREFIX}{session_id}",
            template_id="",
            overlay_path=str(self.sessions_dir / f"{session_id}.qcow2"),
            mac_address=derive_mac_address(session_id),
            defined=True,
        )
        if connection_info is not None:
            instance.config = InstanceConfig(
                network_mode=connection_info.mode,
                username=connection_info.username,
                password=connection_info.password,
            )
            instance.reservation = self.allocator.restore(session_id, connection_info)
            if isinstance(instance.reservation, IsolatedReservation):
                instance.resolved_address = connection_info.host
            instance.update_state(InstanceState.RUNNING)

        self.registry.claim(instance)
        logger.info(
            "Adopted instance",
            session_id=session_id,
            instance_id=instance.instance_id,
            has_reservation=instance.reservation is not None,
        )
        return instance

    async def start_instance(self, session_id: str) -> ConnectionInfo:
        """
        Ensure the session VM is running and return its connection info.

        Raises:
            NotFoundError: no instance for the session
            VMTimeoutError: the domain never reached the running state
            ProvisioningError: hypervisor failure or unexpected state
        """
        instance = self._require(session_id)

        async with self._get_lock(session_id):
            try:
                state = await self.hypervisor.get_state(instance.instance_id)
                if state == DomainState.SHUT_OFF:
                    logger.info("Starting instance", session_id=session_id, instance_id=instance.instance_id)
                    await self.hypervisor.start(instance.instance_id)
                elif state in (DomainState.NOT_FOUND, DomainState.CRASHED):
                    raise ProvisioningError(
                        f"Instance is in unexpected state: {state.value}",
                        session_id=session_id,
                    )

                await wait_until(
                    lambda: self._is_running(instance.instance_id),
                    timeout=self.settings.vm_boot_timeout_seconds,
                    interval=self.settings.vm_state_poll_interval_seconds,
                    description=f"{instance.instance_id} to reach running state",
                )
                instance.update_state(InstanceState.RUNNING)

                if isinstance(instance.reservation, IsolatedReservation):
                    instance.resolved_address = await self._resolve_address(instance)

            except (ProvisioningError, VMTimeoutError):
                instance.update_state(InstanceState.FAILED)
                raise
            except HypervisorError as e:
                instance.update_state(InstanceState.FAILED)
                raise ProvisioningError(f"Instance start failed: {e}", session_id=session_id) from e

        logger.info(
            "Instance running",
            session_id=session_id,
            instance_id=instance.instance_id,
            address=instance.resolved_address,
        )
        return self.connection_info(instance)

    async def stop_instance(self, session_id: str) -> VMInstance:
        """Power off the session VM, keeping its definition and disk."""
        instance = self._require(session_id)

        async with self._get_lock(session_id):
            state = await self.hypervisor.get_state(instance.instance_id)
            if state == DomainState.RUNNING:
                logger.info("Stopping instance", session_id=session_id, instance_id=instance.instance_id)
                await self.hypervisor.destroy(instance.instance_id)
            instance.update_state(InstanceState.STOPPED)
        return instance

    async def delete_instance(self, session_id: str) -> bool:
        """
        Tear down the session VM. Safe to call repeatedly.

        Every step is attempted even if an earlier one fails.

        Returns:
            True if an instance was torn down, False if there was nothing to do
        """
        lock = self._get_lock(session_id)
        async with lock:
            instance = self.registry.pop(session_id)
            if instance is None:
                logger.debug("No instance to delete", session_id=session_id)
                return False

            logger.info("Deleting instance", session_id=session_id, instance_id=instance.instance_id)

            if instance.defined:
                await self._teardown_domain(instance)

            try:
                await self.hypervisor.delete_overlay(instance.overlay_path)
            except Exception as e:
                logger.error(
                    "Failed to delete overlay disk",
                    session_id=session_id,
                    overlay_path=instance.overlay_path,
                    error=str(e),
                )

            if instance.reservation is not None:
                try:
                    self.allocator.release(instance.reservation)
                except Exception as e:
                    logger.error("Failed to release network reservation", session_id=session_id, error=str(e))

            instance.update_state(InstanceState.DELETED)

        if not lock.locked():
            self._locks.pop(session_id, None)

        logger.info("Instance deleted", session_id=session_id)
        return True

    async def get_instance_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Live status of the session VM, reconciling the registry with the hypervisor."""
        instance = self.registry.get(session_id)
        if instance is None:
            return None

        live = await self.hypervisor.get_state(instance.instance_id)
        live_state = live.to_instance_state()

        # A VM still booting reports "running" before start_instance confirms it
        if instance.state != InstanceState.PROVISIONING and live_state != instance.state:
            logger.info(
                "Instance state drifted",
                session_id=session_id,
                cached=instance.state.value,
                live=live_state.value,
            )
            instance.update_state(live_state)

        status = instance.to_dict()
        status["domain_state"] = live.value
        status["connection_info"] = None
        if instance.reservation is not None:
            status["connection_info"] = self.connection_info(instance).to_dict(include_private=False)
        return status

    async def list_instances(self) -> List[Dict[str, Any]]:
        """Status of every tracked instance."""
        statuses = []
        for instance in self.registry.snapshot():
            try:
                status = await self.get_instance_status(instance.session_id)
                if status is not None:
                    statuses.append(status)
            except Exception as e:
                logger.warning("Failed to get instance status", session_id=instance.session_id, error=str(e))
        return statuses

    def expected_connection_info(self, session_id: str, config: InstanceConfig) -> Optional[ConnectionInfo]:
        """
        Connection details known before the VM exists.

        Only isolated addresses derive from the session id; NAT ports are not
        known until the instance is created.
        """
        if config.network_mode != NetworkMode.ISOLATED:
            return None
        return self.allocator.build_connection_info(
            self.allocator.isolated_reservation(session_id),
            username=config.username,
        )

    def connection_info(self, instance: VMInstance) -> ConnectionInfo:
        return self.allocator.build_connection_info(
            instance.reservation,
            resolved_address=instance.resolved_address,
            username=instance.config.username,
            password=instance.config.password,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> VMInstance:
        instance = self.registry.get(session_id)
        if instance is None:
            raise NotFoundError("No VM instance for session", session_id=session_id)
        return instance

    def _network_name(self, mode: NetworkMode) -> str:
        if mode == NetworkMode.ISOLATED:
            return self.settings.isolated_network_name
        return self.settings.nat_network_name

    async def _is_running(self, instance_id: str) -> bool:
        return await self.hypervisor.get_state(instance_id) == DomainState.RUNNING

    async def _resolve_address(self, instance: VMInstance) -> str:
        """Look up the DHCP lease for the instance MAC, falling back to the derived IP."""
        reservation = instance.reservation
        found: Dict[str, str] = {}

        async def lease_present() -> bool:
            try:
                ip = await self.hypervisor.resolve_lease(reservation.network_name, instance.mac_address)
            except HypervisorError as e:
                logger.debug("Lease lookup failed", session_id=instance.session_id, error=str(e))
                return False
            if ip:
                found["ip"] = ip
                return True
            return False

        try:
            await wait_until(
                lease_present,
                timeout=self.settings.lease_timeout_seconds,
                interval=self.settings.lease_poll_interval_seconds,
                description=f"DHCP lease for {instance.mac_address}",
            )
        except VMTimeoutError:
            logger.warning(
                "No DHCP lease found, using derived address",
                session_id=instance.session_id,
                mac_address=instance.mac_address,
                ip=reservation.ip,
            )
            return reservation.ip

        if found["ip"] != reservation.ip:
            logger.info(
                "Lease address differs from derived address",
                session_id=instance.session_id,
                derived=reservation.ip,
                leased=found["ip"],
            )
        return found["ip"]

    async def _teardown_domain(self, instance: VMInstance) -> None:
        try:
            state = await self.hypervisor.get_state(instance.instance_id)
        except Exception as e:
            logger.error("Failed to query instance state", session_id=instance.session_id, error=str(e))
            state = DomainState.UNKNOWN

        if state == DomainState.NOT_FOUND:
            return

        if state != DomainState.SHUT_OFF:
            try:
                await self.hypervisor.destroy(instance.instance_id)
            except Exception as e:
                logger.error("Failed to stop instance", session_id=instance.session_id, error=str(e))

        try:
            await self.hypervisor.undefine(instance.instance_id)
        except Exception as e:
            logger.error("Failed to undefine instance", session_id=instance.session_id, error=str(e))

    async def _rollback(self, instance: VMInstance, overlay_created: bool, define_attempted: bool) -> None:
        """Undo a partial create. Failures are logged, never raised."""
        if define_attempted:
            await self._teardown_domain(instance)

        if overlay_created:
            try:
                await self.hypervisor.delete_overlay(instance.overlay_path)
            except Exception as e:
                logger.error("Rollback: failed to delete overlay", session_id=instance.session_id, error=str(e))

        if instance.reservation is not None:
            try:
                self.allocator.release(instance.reservation)
            except Exception as e:
                logger.error("Rollback: failed to release network", session_id=instance.session_id, error=str(e))

        self.registry.discard(instance.session_id, instance)
        instance.update_state(InstanceState.FAILED)


def _verify_image(path: Path) -> None:
    """Check an uploaded image is a readable qcow2 file."""
    if not path.exists():
        raise NotFoundError("Image file not found", image_path=str(path))
    if not path.is_file():
        raise ValidationError("Image path is not a file", image_path=str(path))
    if path.suffix.lower() != ".qcow2":
        raise ValidationError(
            f"Unsupported image type: {path.suffix or 'none'}. Only .qcow2 images are supported.",
            image_path=str(path),
        )
    with path.open("rb") as handle:
        if handle.read(4) != QCOW2_MAGIC:
            raise ValidationError("Image is not in qcow2 format", image_path=str(path))
