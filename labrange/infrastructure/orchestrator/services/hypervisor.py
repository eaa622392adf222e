"""
Hypervisor control plane - KVM/QEMU via virsh and qemu-img

Features:
- Copy-on-write qcow2 overlays on shared read-only base images
- Domain definition from generated XML
- Domain state queries and DHCP lease lookup by MAC
"""

import asyncio
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol

import structlog

from labrange.core.config import Settings
from labrange.core.exceptions import HypervisorError

from ..models import DomainSpec, DomainState

logger = structlog.get_logger(__name__)

_LEASE_IP_RE = re.compile(r"(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})/\d+")


class Hypervisor(Protocol):
    """Control-plane operations the VM manager relies on."""

    async def check_available(self) -> str: ...

    async def create_overlay(self, base_image: str, overlay_path: str) -> str: ...

    async def delete_overlay(self, overlay_path: str) -> None: ...

    async def define_and_start(self, spec: DomainSpec) -> str: ...

    async def start(self, instance_id: str) -> None: ...

    async def get_state(self, instance_id: str) -> DomainState: ...

    async def destroy(self, instance_id: str) -> None: ...

    async def undefine(self, instance_id: str) -> None: ...

    async def resolve_lease(self, network: str, mac_address: str) -> Optional[str]: ...


def render_domain_xml(spec: DomainSpec) -> str:
    """Render a libvirt domain definition for a session VM."""
    return f"""<domain type='kvm'>
  <name>{spec.name}</name>
  <memory unit='MiB'>{spec.ram_mb}</memory>
  <vcpu placement='static'>{spec.cpus}</vcpu>
  <os>
    <type arch='x86_64' machine='pc'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <clock offset='utc'/>
  <on_poweroff>destroy</on_poweroff>
  <on_reboot>restart</on_reboot>
  <on_crash>destroy</on_crash>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='{spec.disk_path}'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <interface type='network'>
      <mac address='{spec.mac_address}'/>
      <source network='{spec.network_name}'/>
      <model type='virtio'/>
    </interface>
    <console type='pty'>
      <target type='serial' port='0'/>
    </console>
    <graphics type='vnc' port='-1' autoport='yes' listen='127.0.0.1'/>
  </devices>
</domain>
"""


def parse_lease_ip(leases_output: str, mac_address: str) -> Optional[str]:
    """Find the IP bound to ``mac_address`` in ``virsh net-dhcp-leases`` output."""
    mac = mac_address.lower()
    for line in leases_output.splitlines():
        if mac in line.lower():
            match = _LEASE_IP_RE.search(line)
            if match:
                return match.group(1)
    return None


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill a child process if it is still running and wait for it to exit."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class VirshHypervisor:
    """
    Hypervisor backed by the libvirt command-line tools.

    Every call runs as an asyncio subprocess so the event loop never blocks
    on the hypervisor.
    """

    def __init__(self, settings: Settings):
        self.uri = settings.libvirt_uri
        self.virsh_binary = settings.virsh_binary
        self.qemu_img_binary = settings.qemu_img_binary
        self.timeout = settings.hypervisor_command_timeout_seconds

    async def _run(self, *args: str) -> str:
        command = " ".join(args)
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await _reap(process)
            raise HypervisorError(f"Command timed out: {command}", command=command)
        except BaseException:
            # Cancelled or failed while waiting: never leave the child running
            await asyncio.shield(_reap(process))
            raise

        if process.returncode != 0:
            error = stderr.decode(errors="replace").strip()
            raise HypervisorError(
                f"Command failed: {error or command}",
                command=command,
                returncode=process.returncode,
                stderr=error,
            )
        return stdout.decode(errors="replace").strip()

    async def _virsh(self, *args: str) -> str:
        return await self._run(self.virsh_binary, "-c", self.uri, *args)

    async def check_available(self) -> str:
        """Return the virsh version, failing if the tooling is missing."""
        try:
            version = await self._run(self.virsh_binary, "--version")
            await self._run(self.qemu_img_binary, "--version")
        except FileNotFoundError as e:
            raise HypervisorError(f"Hypervisor tooling not installed: {e.filename}") from e
        return version

    async def create_overlay(self, base_image: str, overlay_path: str) -> str:
        await self._run(
            self.qemu_img_binary,
            "create",
            "-f", "qcow2",
            "-F", "qcow2",
            "-b", base_image,
            overlay_path,
        )
        logger.info("Overlay disk created", overlay_path=overlay_path, base_image=base_image)
        return overlay_path

    async def delete_overlay(self, overlay_path: str) -> None:
        try:
            await asyncio.to_thread(os.unlink, overlay_path)
        except FileNotFoundError:
            logger.debug("Overlay already gone", overlay_path=overlay_path)

    async def define_and_start(self, spec: DomainSpec) -> str:
        xml = render_domain_xml(spec)
        fd, xml_path = tempfile.mkstemp(prefix=f"{spec.name}-", suffix=".xml")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(xml)
            logger.info("Defining domain", domain=spec.name)
            await self._virsh("define", xml_path)
        finally:
            Path(xml_path).unlink(missing_ok=True)

        logger.info("Starting domain", domain=spec.name)
        await self._virsh("start", spec.name)
        return spec.name

    async def start(self, instance_id: str) -> None:
        await self._virsh("start", instance_id)

    async def get_state(self, instance_id: str) -> DomainState:
        try:
            output = await self._virsh("domstate", instance_id)
        except HypervisorError as e:
            if "failed to get domain" in e.stderr.lower() or "domain not found" in e.stderr.lower():
                return DomainState.NOT_FOUND
            raise
        return DomainState.parse(output)

    async def destroy(self, instance_id: str) -> None:
        await self._virsh("destroy", instance_id)

    async def undefine(self, instance_id: str) -> None:
        await self._virsh("undefine", instance_id)

    async def resolve_lease(self, network: str, mac_address: str) -> Optional[str]:
        output = await self._virsh("net-dhcp-leases", network)
        return parse_lease_ip(output, mac_address)

    async def list_domains(self) -> List[str]:
        output = await self._virsh("list", "--all", "--name")
        return [name.strip() for name in output.splitlines() if name.strip()]
