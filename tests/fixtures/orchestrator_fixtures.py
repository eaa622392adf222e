"""
Pytest fixtures and fakes for orchestrator testing.

The fakes stand in for the hypervisor, the guest SSH server and the TCP
probe so the whole session lifecycle runs in-process.
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from labrange.core.config import Settings
from labrange.core.exceptions import HypervisorError, VMTimeoutError
from labrange.domain.labs.entities import Credentials, LabTemplate
from labrange.infrastructure.orchestrator.factory import Orchestrator, build_orchestrator
from labrange.infrastructure.orchestrator.models import DomainSpec, DomainState, ExecResult
from labrange.infrastructure.orchestrator.services.vm_manager import QCOW2_MAGIC

TEST_SECRET = "test-secret-key-for-flag-hmac-0123456789"

_PATH_RE = re.compile(r"> (/[\w./-]+) ")
_FLAG_RE = re.compile(r"FLAG\{[^}]*\}")


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    """Settings with fast timings and directories under tmp_path."""
    values: Dict[str, Any] = {
        "secret_key": TEST_SECRET,
        "environment": "test",
        "templates_dir": str(tmp_path / "templates"),
        "sessions_dir": str(tmp_path / "sessions"),
        "vm_boot_timeout_seconds": 0.5,
        "vm_state_poll_interval_seconds": 0.01,
        "lease_timeout_seconds": 0.05,
        "lease_poll_interval_seconds": 0.01,
        "injection_max_attempts": 3,
        "injection_retry_delay_seconds": 0,
        "injection_total_budget_seconds": 5,
        "notification_timeout_seconds": 1,
        "session_cleanup_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeHypervisor:
    """In-memory hypervisor recording every call."""

    def __init__(self) -> None:
        self.domains: Dict[str, DomainState] = {}
        self.overlays: Set[str] = set()
        self.leases: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Set[str] = set()
        self.define_delay: float = 0.0
        self.overlay_delay: float = 0.0
        self.ignore_start = False

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        if operation in self.fail_on:
            raise HypervisorError(f"{operation} failed", command=operation, returncode=1, stderr="boom")

    def count(self, operation: str, target: Optional[str] = None) -> int:
        return sum(1 for op, t in self.calls if op == operation and (target is None or t == target))

    async def check_available(self) -> str:
        return "10.0.0"

    async def create_overlay(self, base_image: str, overlay_path: str) -> str:
        self._record("create_overlay", overlay_path)
        # The file exists as soon as qemu-img starts writing it
        self.overlays.add(overlay_path)
        if self.overlay_delay:
            await asyncio.sleep(self.overlay_delay)
        return overlay_path

    async def delete_overlay(self, overlay_path: str) -> None:
        self._record("delete_overlay", overlay_path)
        self.overlays.discard(overlay_path)

    async def define_and_start(self, spec: DomainSpec) -> str:
        if self.define_delay:
            await asyncio.sleep(self.define_delay)
        self._record("define", spec.name)
        self.domains[spec.name] = DomainState.RUNNING
        return spec.name

    async def start(self, instance_id: str) -> None:
        self._record("start", instance_id)
        if not self.ignore_start:
            self.domains[instance_id] = DomainState.RUNNING

    async def get_state(self, instance_id: str) -> DomainState:
        if self.ignore_start:
            return DomainState.SHUT_OFF if instance_id in self.domains else DomainState.NOT_FOUND
        return self.domains.get(instance_id, DomainState.NOT_FOUND)

    async def destroy(self, instance_id: str) -> None:
        self._record("destroy", instance_id)
        if instance_id in self.domains:
            self.domains[instance_id] = DomainState.SHUT_OFF

    async def undefine(self, instance_id: str) -> None:
        self._record("undefine", instance_id)
        self.domains.pop(instance_id, None)

    async def resolve_lease(self, network: str, mac_address: str) -> Optional[str]:
        return self.leases.get(mac_address)


class FakeRemoteShell:
    """Guest SSH server that keeps written files in a dict."""

    def __init__(self) -> None:
        self.files: Dict[str, str] = {}
        self.commands: List[str] = []
        self.failing_paths: Set[str] = set()
        self.connect_failures = 0
        self.unreachable = False
        self.sudo_available = True
        self.connects = 0
        self.closed = 0

    async def connect(self, host, port, username, password, algorithms) -> Any:
        self.connects += 1
        if self.unreachable or self.connects <= self.connect_failures:
            raise OSError("Connection refused")
        return {"host": host, "port": port, "username": username}

    async def exec(self, handle: Any, command: str, input: Optional[str] = None) -> ExecResult:
        self.commands.append(command)
        if command.startswith("sudo") and not self.sudo_available:
            return ExecResult(stdout="", stderr="sudo: a password is required", exit_status=1)

        path_match = _PATH_RE.search(command)
        value_match = _FLAG_RE.search(command)
        if path_match is None or value_match is None:
            return ExecResult(stdout="", stderr="unexpected command", exit_status=2)

        path = path_match.group(1)
        if path in self.failing_paths:
            return ExecResult(stdout="", stderr="Permission denied", exit_status=1)
        self.files[path] = value_match.group(0)
        return ExecResult(stdout="", stderr="", exit_status=0)

    async def close(self, handle: Any) -> None:
        self.closed += 1


class FakeProbe:
    """Reachability probe that answers immediately."""

    def __init__(self) -> None:
        self.reachable = True
        self.checked: List[Tuple[str, int]] = []

    async def wait_until_reachable(self, host: str, port: int) -> None:
        self.checked.append((host, port))
        if not self.reachable:
            raise VMTimeoutError(f"Timed out waiting for {host}:{port}", timeout=0)


class RecordingNotificationSink:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


async def wait_for_status(orchestrator: Orchestrator, session_id: str, *statuses: str, timeout: float = 3.0) -> Dict[str, Any]:
    """Poll a session until it reaches one of the given statuses and provisioning has finished."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        info = await orchestrator.sessions.get_session_info(session_id)
        if info["status"] in statuses and session_id not in orchestrator.sessions._provision_tasks:
            return info
        if loop.time() > deadline:
            raise AssertionError(f"session stuck in {info['status']}, wanted {statuses}")
        await asyncio.sleep(0.01)


async def wait_for_event(sink: RecordingNotificationSink, event: str, timeout: float = 3.0) -> List[Dict[str, Any]]:
    """Poll a recording sink until an event of the given type arrives."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not sink.of_type(event):
        if loop.time() > deadline:
            raise AssertionError(f"no {event} notification")
        await asyncio.sleep(0.01)
    return sink.of_type(event)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def base_image(tmp_path) -> str:
    """A minimal file carrying the qcow2 magic header."""
    path = tmp_path / "templates" / "basicpentest-base.qcow2"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(QCOW2_MAGIC + b"\x00\x00\x00\x03" + b"\x00" * 64)
    return str(path)


@pytest.fixture
def lab(base_image) -> LabTemplate:
    """Lab with the default user (25) and root (50) flags."""
    return LabTemplate(
        id="lab-basic",
        name="Basic Pentest",
        template_id=base_image,
        credentials=Credentials(username="student", password="hunter2"),
    )


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def remote_shell() -> FakeRemoteShell:
    return FakeRemoteShell()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def notifications() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
async def orchestrator_factory(tmp_path, lab, hypervisor, remote_shell, probe, notifications):
    """Build orchestrators over the shared fakes; all are shut down afterwards."""
    created: List[Orchestrator] = []

    def factory(labs=None, repository=None, **overrides: Any) -> Orchestrator:
        orchestrator = build_orchestrator(
            make_settings(tmp_path, **overrides),
            labs=labs if labs is not None else [lab],
            repository=repository,
            hypervisor=hypervisor,
            remote_shell=remote_shell,
            probe=probe,
            notifications=notifications,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.sessions.shutdown()


@pytest.fixture
def orchestrator(orchestrator_factory) -> Orchestrator:
    return orchestrator_factory()
