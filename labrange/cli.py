"""
LabRange Admin CLI - labrange
Click-based host administration tool for the session orchestrator.
"""

import asyncio
import json
import sys
from typing import Optional

import click

from labrange.core.config import get_settings
from labrange.core.exceptions import LabRangeError
from labrange.core.logging import setup_logging
from labrange.domain.labs.entities import LabTemplate
from labrange.infrastructure.orchestrator.factory import build_orchestrator
from labrange.infrastructure.orchestrator.registry import PortPool
from labrange.infrastructure.orchestrator.services.hypervisor import VirshHypervisor
from labrange.infrastructure.orchestrator.services.network_allocator import (
    NetworkAllocator,
    derive_mac_address,
)
from labrange.infrastructure.orchestrator.services.vm_manager import VMManager


# ============================================
# CLI Configuration
# ============================================

class Context:
    """CLI context for global settings."""

    def __init__(self):
        self.output_format: str = "table"
        self.quiet: bool = False


pass_context = click.make_pass_decorator(Context, ensure=True)


def build_vm_manager() -> VMManager:
    settings = get_settings()
    return VMManager(
        settings,
        VirshHypervisor(settings),
        NetworkAllocator(settings, PortPool()),
    )


def emit(ctx: Context, data: dict) -> None:
    if ctx.quiet:
        return
    if ctx.output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
        return
    width = max(len(key) for key in data)
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value) or "-"
        elif isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
        click.echo(f"{key:<{width}}  {value}")


# ============================================
# Base Commands
# ============================================

@click.group()
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress output except errors",
)
@click.pass_context
def cli(ctx: click.Context, output: str, quiet: bool):
    """LabRange orchestrator admin CLI"""
    ctx.ensure_object(Context)
    ctx.obj.output_format = output
    ctx.obj.quiet = quiet

    settings = get_settings()
    # stdout is reserved for command output
    setup_logging(settings.log_level if not quiet else "WARNING", "console", stream=sys.stderr)


@cli.command("check-host")
@pass_context
def check_host(ctx: Context):
    """Verify virsh/qemu-img and prepare the image directories"""
    manager = build_vm_manager()

    async def run() -> dict:
        status = await manager.check_host()
        domains = await manager.hypervisor.list_domains()
        status["session_domains"] = [d for d in domains if d.startswith(VMManager.DOMAIN_PREFIX)]
        return status

    try:
        emit(ctx, asyncio.run(run()))
    except LabRangeError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)


@cli.command("health")
@pass_context
def health(ctx: Context):
    """Check the database and Redis backends configured for the orchestrator"""
    orchestrator = build_orchestrator(get_settings())
    backends = [b for b in (orchestrator.db, orchestrator.cache) if b is not None]

    async def run() -> dict:
        try:
            for backend in backends:
                try:
                    await backend.connect()
                except Exception as e:
                    click.echo(f"Error: {e}", err=True)
            return await orchestrator.health()
        finally:
            for backend in backends:
                await backend.disconnect()

    status = asyncio.run(run())
    emit(ctx, status)
    if any(status[name]["status"] == "unhealthy" for name in ("database", "cache")):
        raise SystemExit(1)


@cli.command("import-template")
@click.argument("image", type=click.Path(dir_okay=False))
@click.option("--lab-id", required=True, help="Lab identifier")
@click.option("--name", required=True, help="Lab name (used for the base image file name)")
@pass_context
def import_template(ctx: Context, image: str, lab_id: str, name: str):
    """Import a qcow2 image as a lab's base image"""
    manager = build_vm_manager()
    lab = LabTemplate(id=lab_id, name=name)

    try:
        template_id = asyncio.run(manager.import_template(image, lab))
    except LabRangeError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)

    emit(ctx, {"lab_id": lab_id, "template_id": template_id})


@cli.command("network-identity")
@click.argument("session_id")
@click.option("--network", "network_name", help="Override the isolated network name")
@pass_context
def network_identity(ctx: Context, session_id: str, network_name: Optional[str]):
    """Show the isolated IP and MAC a session id maps to"""
    settings = get_settings()
    allocator = NetworkAllocator(settings)
    emit(ctx, {
        "session_id": session_id,
        "ip": allocator.derive_ip(session_id),
        "mac_address": derive_mac_address(session_id),
        "network": network_name or settings.isolated_network_name,
        "domain": f"{VMManager.DOMAIN_PREFIX}{session_id}",
    })


if __name__ == "__main__":
    cli()
