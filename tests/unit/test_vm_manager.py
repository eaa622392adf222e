"""
Unit tests for the VM Lifecycle Manager.

Tests:
- Create/start/stop/delete against the in-memory hypervisor
- Rollback of partial creates (failure and cancellation)
- Idempotent teardown
- Template import
"""

import asyncio

import pytest

from labrange.core.exceptions import (
    CapacityError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
    VMTimeoutError,
)
from labrange.domain.labs.entities import LabTemplate, NetworkMode
from labrange.infrastructure.orchestrator.models import DomainState, InstanceConfig, InstanceState
from labrange.infrastructure.orchestrator.services.network_allocator import NetworkAllocator, derive_mac_address
from labrange.infrastructure.orchestrator.services.vm_manager import QCOW2_MAGIC, VMManager
from tests.fixtures.orchestrator_fixtures import make_settings


@pytest.fixture
def vm_manager(settings, hypervisor) -> VMManager:
    return VMManager(settings, hypervisor, NetworkAllocator(settings))


def nat_config() -> InstanceConfig:
    return InstanceConfig(network_mode=NetworkMode.NAT, username="student", password="hunter2")


class TestCreateInstance:
    """Test VM creation."""

    @pytest.mark.asyncio
    async def test_create_and_start_isolated(self, vm_manager, hypervisor, base_image):
        result = await vm_manager.create_instance(base_image, "s1", InstanceConfig())
        info = await vm_manager.start_instance("s1")

        assert result.instance_id == "Session-s1"
        assert hypervisor.domains["Session-s1"] == DomainState.RUNNING
        assert any(path.endswith("s1.qcow2") for path in hypervisor.overlays)
        # No lease in the fake table, so the derived address is used
        assert info.host == vm_manager.allocator.derive_ip("s1")
        assert info.ssh_port == 22
        assert vm_manager.registry.get("s1").state == InstanceState.RUNNING

    @pytest.mark.asyncio
    async def test_lease_address_preferred(self, vm_manager, hypervisor, base_image):
        hypervisor.leases[derive_mac_address("s1")] = "10.12.10.250"

        await vm_manager.create_instance(base_image, "s1", InstanceConfig())
        info = await vm_manager.start_instance("s1")

        assert info.host == "10.12.10.250"
        assert info.management.host == "10.12.10.250"

    @pytest.mark.asyncio
    async def test_nat_instance_gets_forwarded_ports(self, vm_manager, base_image, settings):
        await vm_manager.create_instance(base_image, "s1", nat_config())
        info = await vm_manager.start_instance("s1")

        assert info.mode == NetworkMode.NAT
        assert info.host == settings.nat_host
        assert (info.ssh_port, info.web_port) == (2200, 8000)
        assert info.username == "student"

    @pytest.mark.asyncio
    async def test_missing_template(self, vm_manager, tmp_path):
        with pytest.raises(NotFoundError):
            await vm_manager.create_instance(str(tmp_path / "missing.qcow2"), "s1", InstanceConfig())

        assert len(vm_manager.registry) == 0

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_create(self, vm_manager, hypervisor, base_image):
        results = await asyncio.gather(
            vm_manager.create_instance(base_image, "s1", InstanceConfig()),
            vm_manager.create_instance(base_image, "s1", InstanceConfig()),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1
        assert hypervisor.count("define") == 1
        assert hypervisor.count("create_overlay") == 1

    @pytest.mark.asyncio
    async def test_define_failure_rolls_back(self, vm_manager, hypervisor, base_image):
        hypervisor.fail_on = {"define"}

        with pytest.raises(ProvisioningError):
            await vm_manager.create_instance(base_image, "s1", nat_config())

        assert hypervisor.overlays == set()
        assert vm_manager.allocator.port_pool.allocated == set()
        assert vm_manager.registry.get("s1") is None

    @pytest.mark.asyncio
    async def test_port_exhaustion_rolls_back(self, tmp_path, hypervisor, base_image):
        settings = make_settings(tmp_path, ssh_port_range=(2200, 2200), web_port_range=(8000, 8000))
        vm_manager = VMManager(settings, hypervisor, NetworkAllocator(settings))
        await vm_manager.create_instance(base_image, "s1", nat_config())

        with pytest.raises(CapacityError):
            await vm_manager.create_instance(base_image, "s2", nat_config())

        assert vm_manager.registry.get("s2") is None
        assert hypervisor.count("create_overlay") == 1

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, vm_manager, hypervisor, base_image):
        hypervisor.define_delay = 0.5
        task = asyncio.create_task(vm_manager.create_instance(base_image, "s1", nat_config()))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert hypervisor.overlays == set()
        assert hypervisor.domains == {}
        assert vm_manager.allocator.port_pool.allocated == set()
        assert vm_manager.registry.get("s1") is None

    @pytest.mark.asyncio
    async def test_cancellation_while_overlay_is_written(self, vm_manager, hypervisor, base_image):
        hypervisor.overlay_delay = 0.5
        task = asyncio.create_task(vm_manager.create_instance(base_image, "s1", InstanceConfig()))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert hypervisor.overlays == set()
        assert hypervisor.count("delete_overlay") == 1
        assert hypervisor.count("define") == 0
        assert vm_manager.registry.get("s1") is None

    @pytest.mark.asyncio
    async def test_session_can_be_recreated_after_delete(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())
        await vm_manager.delete_instance("s1")

        await vm_manager.create_instance(base_image, "s1", InstanceConfig())

        assert hypervisor.count("define", "Session-s1") == 2


class TestAdoptInstance:
    """Test taking over VMs created by an earlier process."""

    @pytest.mark.asyncio
    async def test_adopted_nat_instance_is_torn_down(self, vm_manager, settings, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", nat_config())
        info = await vm_manager.start_instance("s1")
        restarted = VMManager(settings, hypervisor, NetworkAllocator(settings))

        instance = restarted.adopt_instance("s1", info)

        assert instance.instance_id == "Session-s1"
        assert instance.overlay_path == vm_manager.registry.get("s1").overlay_path
        assert restarted.allocator.port_pool.allocated == {info.ssh_port, info.web_port}

        assert await restarted.delete_instance("s1") is True
        assert hypervisor.domains == {}
        assert hypervisor.overlays == set()
        assert restarted.allocator.port_pool.allocated == set()

    @pytest.mark.asyncio
    async def test_adopted_isolated_instance_keeps_address(self, vm_manager, settings, hypervisor, base_image):
        hypervisor.leases[derive_mac_address("s1")] = "10.12.10.250"
        await vm_manager.create_instance(base_image, "s1", InstanceConfig(username="student"))
        info = await vm_manager.start_instance("s1")
        restarted = VMManager(settings, hypervisor, NetworkAllocator(settings))

        restarted.adopt_instance("s1", info)
        status = await restarted.get_instance_status("s1")

        assert status["state"] == "running"
        assert status["connection_info"]["host"] == "10.12.10.250"

    @pytest.mark.asyncio
    async def test_adopt_without_connection_info(self, vm_manager, hypervisor):
        hypervisor.domains["Session-s1"] = DomainState.SHUT_OFF
        hypervisor.overlays.add(str(vm_manager.sessions_dir / "s1.qcow2"))

        instance = vm_manager.adopt_instance("s1")

        assert instance.reservation is None
        assert await vm_manager.delete_instance("s1") is True
        assert hypervisor.domains == {}
        assert hypervisor.overlays == set()

    def test_adopt_keeps_existing_record(self, vm_manager):
        first = vm_manager.adopt_instance("s1")

        assert vm_manager.adopt_instance("s1") is first

    def test_expected_connection_info(self, vm_manager):
        isolated = vm_manager.expected_connection_info("s1", InstanceConfig(username="student"))

        assert isolated.host == vm_manager.allocator.derive_ip("s1")
        assert isolated.username == "student"
        assert vm_manager.expected_connection_info("s1", nat_config()) is None


class TestStartStop:
    """Test power state changes."""

    @pytest.mark.asyncio
    async def test_start_timeout_marks_failed(self, vm_manager, hypervisor, base_image):
        hypervisor.ignore_start = True
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())

        with pytest.raises(VMTimeoutError):
            await vm_manager.start_instance("s1")

        assert hypervisor.count("start") == 1
        assert vm_manager.registry.get("s1").state == InstanceState.FAILED

    @pytest.mark.asyncio
    async def test_start_unknown_session(self, vm_manager):
        with pytest.raises(NotFoundError):
            await vm_manager.start_instance("missing")

    @pytest.mark.asyncio
    async def test_stop_and_restart(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())

        instance = await vm_manager.stop_instance("s1")
        assert instance.state == InstanceState.STOPPED
        assert hypervisor.domains["Session-s1"] == DomainState.SHUT_OFF

        await vm_manager.start_instance("s1")
        assert hypervisor.count("start") == 1
        assert instance.state == InstanceState.RUNNING


class TestDeleteInstance:
    """Test teardown."""

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", nat_config())

        assert await vm_manager.delete_instance("s1") is True
        assert await vm_manager.delete_instance("s1") is False

        assert hypervisor.count("undefine") == 1
        assert hypervisor.count("delete_overlay") == 1
        assert hypervisor.domains == {}
        assert vm_manager.allocator.port_pool.allocated == set()

    @pytest.mark.asyncio
    async def test_concurrent_deletes_tear_down_once(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())

        results = await asyncio.gather(*(vm_manager.delete_instance("s1") for _ in range(3)))

        assert sorted(results) == [False, False, True]
        assert hypervisor.count("undefine") == 1

    @pytest.mark.asyncio
    async def test_destroy_failure_still_cleans_up(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", nat_config())
        hypervisor.fail_on = {"destroy"}

        assert await vm_manager.delete_instance("s1") is True

        assert hypervisor.count("undefine") == 1
        assert hypervisor.overlays == set()
        assert vm_manager.allocator.port_pool.allocated == set()

    @pytest.mark.asyncio
    async def test_overlay_failure_still_releases_network(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", nat_config())
        hypervisor.fail_on = {"delete_overlay"}

        assert await vm_manager.delete_instance("s1") is True

        assert vm_manager.allocator.port_pool.allocated == set()
        assert vm_manager.registry.get("s1") is None


class TestInstanceStatus:
    """Test status reconciliation."""

    @pytest.mark.asyncio
    async def test_unknown_session(self, vm_manager):
        assert await vm_manager.get_instance_status("missing") is None

    @pytest.mark.asyncio
    async def test_status_reflects_hypervisor(self, vm_manager, hypervisor, base_image):
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())
        await vm_manager.start_instance("s1")

        hypervisor.domains["Session-s1"] = DomainState.CRASHED
        status = await vm_manager.get_instance_status("s1")

        assert status["domain_state"] == "crashed"
        assert status["state"] == InstanceState.FAILED.value
        assert "management" not in status["connection_info"]

    @pytest.mark.asyncio
    async def test_list_instances(self, vm_manager, base_image):
        await vm_manager.create_instance(base_image, "s1", InstanceConfig())
        await vm_manager.create_instance(base_image, "s2", InstanceConfig())

        statuses = await vm_manager.list_instances()

        assert {s["session_id"] for s in statuses} == {"s1", "s2"}


class TestImportTemplate:
    """Test base image import."""

    @pytest.fixture
    def uploads(self, tmp_path):
        directory = tmp_path / "uploads"
        directory.mkdir()
        return directory

    @pytest.fixture
    def web_lab(self) -> LabTemplate:
        return LabTemplate(id="lab-web", name="Web Lab")

    @pytest.mark.asyncio
    async def test_import(self, vm_manager, uploads, web_lab, settings):
        image = uploads / "upload.qcow2"
        image.write_bytes(QCOW2_MAGIC + b"\x00" * 32)

        template_id = await vm_manager.import_template(str(image), web_lab)

        assert template_id.endswith("weblab-base.qcow2")
        assert template_id.startswith(settings.templates_dir)
        with open(template_id, "rb") as handle:
            assert handle.read(4) == QCOW2_MAGIC

    @pytest.mark.asyncio
    async def test_import_is_idempotent(self, vm_manager, uploads, web_lab):
        image = uploads / "upload.qcow2"
        image.write_bytes(QCOW2_MAGIC + b"\x01")
        first = await vm_manager.import_template(str(image), web_lab)

        image.write_bytes(QCOW2_MAGIC + b"\x02")
        second = await vm_manager.import_template(str(image), web_lab)

        assert first == second
        with open(second, "rb") as handle:
            assert handle.read() == QCOW2_MAGIC + b"\x01"

    @pytest.mark.asyncio
    async def test_rejects_non_qcow2_content(self, vm_manager, uploads, web_lab):
        image = uploads / "fake.qcow2"
        image.write_bytes(b"not an image")

        with pytest.raises(ValidationError):
            await vm_manager.import_template(str(image), web_lab)

    @pytest.mark.asyncio
    async def test_rejects_other_extensions(self, vm_manager, uploads, web_lab):
        image = uploads / "disk.vmdk"
        image.write_bytes(QCOW2_MAGIC)

        with pytest.raises(ValidationError):
            await vm_manager.import_template(str(image), web_lab)

    @pytest.mark.asyncio
    async def test_missing_image(self, vm_manager, uploads, web_lab):
        with pytest.raises(NotFoundError):
            await vm_manager.import_template(str(uploads / "missing.qcow2"), web_lab)


class TestCheckHost:
    """Test host preparation."""

    @pytest.mark.asyncio
    async def test_creates_directories(self, vm_manager, settings):
        report = await vm_manager.check_host()

        assert report["version"] == "10.0.0"
        assert report["sessions_dir"] == settings.sessions_dir
