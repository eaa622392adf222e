"""
Unit tests for the virsh output parsers, domain XML and the TCP probe.
"""

import asyncio

import pytest

from labrange.core.exceptions import HypervisorError, VMTimeoutError
from labrange.infrastructure.orchestrator.models import DomainSpec, DomainState, InstanceState
from labrange.infrastructure.orchestrator.services.hypervisor import VirshHypervisor, parse_lease_ip, render_domain_xml
from labrange.infrastructure.orchestrator.services.reachability import TcpReachabilityProbe

LEASES = """\
 Expiry Time           MAC address         Protocol   IP address          Hostname   Client ID or DUID
---------------------------------------------------------------------------------------------------------
 2026-10-17 12:00:00   52:54:00:aa:bb:cc   ipv4       10.12.10.57/24      kali       -
 2026-10-17 12:05:00   52:54:00:11:22:33   ipv4       10.12.10.88/24      target     -
"""


class TestLeaseParsing:
    """Test ``virsh net-dhcp-leases`` parsing."""

    def test_finds_ip_for_mac(self):
        assert parse_lease_ip(LEASES, "52:54:00:11:22:33") == "10.12.10.88"

    def test_mac_match_is_case_insensitive(self):
        assert parse_lease_ip(LEASES, "52:54:00:AA:BB:CC") == "10.12.10.57"

    def test_unknown_mac(self):
        assert parse_lease_ip(LEASES, "52:54:00:ff:ff:ff") is None
        assert parse_lease_ip("", "52:54:00:ff:ff:ff") is None


class TestDomainState:
    """Test domstate parsing and mapping."""

    @pytest.mark.parametrize("raw,expected", [
        ("running\n", DomainState.RUNNING),
        ("shut off", DomainState.SHUT_OFF),
        ("Crashed", DomainState.CRASHED),
        ("something new", DomainState.UNKNOWN),
    ])
    def test_parse(self, raw, expected):
        assert DomainState.parse(raw) == expected

    def test_instance_state_mapping(self):
        assert DomainState.RUNNING.to_instance_state() == InstanceState.RUNNING
        assert DomainState.SHUT_OFF.to_instance_state() == InstanceState.STOPPED
        assert DomainState.NOT_FOUND.to_instance_state() == InstanceState.DELETED
        assert DomainState.CRASHED.to_instance_state() == InstanceState.FAILED


class TestDomainXml:
    """Test the generated domain definition."""

    def test_contains_domain_values(self):
        spec = DomainSpec(
            name="Session-abc",
            disk_path="/images/sessions/abc.qcow2",
            mac_address="52:54:00:12:34:56",
            ram_mb=2048,
            cpus=2,
            network_name="labs-net",
        )

        xml = render_domain_xml(spec)

        assert "<name>Session-abc</name>" in xml
        assert "<memory unit='MiB'>2048</memory>" in xml
        assert ">2</vcpu>" in xml
        assert "<source file='/images/sessions/abc.qcow2'/>" in xml
        assert "<mac address='52:54:00:12:34:56'/>" in xml
        assert "<source network='labs-net'/>" in xml


class TestTcpProbe:
    """Test the reachability probe against a local listener."""

    @pytest.mark.asyncio
    async def test_open_port(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        probe = TcpReachabilityProbe(timeout=1, interval=0.01, connect_timeout=0.5)

        async with server:
            assert await probe.check_once("127.0.0.1", port) is True
            await probe.wait_until_reachable("127.0.0.1", port)

    @pytest.mark.asyncio
    async def test_closed_port_times_out(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        probe = TcpReachabilityProbe(timeout=0.1, interval=0.02, connect_timeout=0.05)

        with pytest.raises(VMTimeoutError):
            await probe.wait_until_reachable("127.0.0.1", port)


class TestCommandRunner:
    """Test subprocess handling of the virsh/qemu-img runner."""

    @pytest.mark.asyncio
    async def test_cancelled_command_is_killed(self, settings, tmp_path):
        marker = tmp_path / "finished"
        hypervisor = VirshHypervisor(settings)
        task = asyncio.create_task(hypervisor._run("sh", "-c", f"sleep 0.5 && touch {marker}"))
        await asyncio.sleep(0.1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.7)

        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_failing_command(self, settings):
        hypervisor = VirshHypervisor(settings)

        with pytest.raises(HypervisorError) as exc:
            await hypervisor._run("sh", "-c", "echo broken >&2; exit 3")

        assert exc.value.returncode == 3
        assert "broken" in exc.value.message
