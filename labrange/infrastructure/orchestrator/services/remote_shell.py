"""
Remote shell - SSH access to guest VMs via asyncssh

Lab guests are frequently years out of date, so the client offers a broad
set of legacy key-exchange, cipher and MAC algorithms alongside modern ones.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import asyncssh
import structlog

from ..models import ExecResult

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AlgorithmSet:
    """SSH algorithm preferences, most preferred first."""
    kex: List[str] = field(default_factory=lambda: [
        "curve25519-sha256",
        "curve25519-sha256@libssh.org",
        "ecdh-sha2-nistp256",
        "diffie-hellman-group-exchange-sha256",
        "diffie-hellman-group14-sha256",
        "diffie-hellman-group14-sha1",
        "diffie-hellman-group-exchange-sha1",
        "diffie-hellman-group1-sha1",
    ])
    ciphers: List[str] = field(default_factory=lambda: [
        "chacha20-poly1305@openssh.com",
        "aes128-gcm@openssh.com",
        "aes256-gcm@openssh.com",
        "aes128-ctr",
        "aes192-ctr",
        "aes256-ctr",
        "aes128-cbc",
        "aes256-cbc",
        "3des-cbc",
    ])
    macs: List[str] = field(default_factory=lambda: [
        "hmac-sha2-256-etm@openssh.com",
        "hmac-sha2-512-etm@openssh.com",
        "hmac-sha2-256",
        "hmac-sha2-512",
        "hmac-sha1",
    ])
    host_keys: List[str] = field(default_factory=lambda: [
        "ssh-ed25519",
        "ecdsa-sha2-nistp256",
        "rsa-sha2-512",
        "rsa-sha2-256",
        "ssh-rsa",
        "ssh-dss",
    ])


LEGACY_COMPATIBLE = AlgorithmSet()


class RemoteShell(Protocol):
    """Minimal remote shell used by the flag engine."""

    async def connect(
        self,
        host: str,
        port: int,
        username: str,
        password: Optional[str],
        algorithms: AlgorithmSet,
    ) -> Any: ...

    async def exec(
        self,
        handle: Any,
        command: str,
        input: Optional[str] = None,
    ) -> ExecResult: ...

    async def close(self, handle: Any) -> None: ...


class AsyncSSHRemoteShell:
    """RemoteShell implementation over asyncssh."""

    def __init__(self, connect_timeout: float = 30, command_timeout: float = 10):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def connect(
        self,
        host: str,
        port: int,
        username: str,
        password: Optional[str],
        algorithms: AlgorithmSet,
    ) -> asyncssh.SSHClientConnection:
        # Guests are throwaway clones, host keys cannot be pinned
        return await asyncssh.connect(
            host,
            port=port,
            username=username,
            password=password,
            known_hosts=None,
            client_keys=None,
            kex_algs=algorithms.kex,
            encryption_algs=algorithms.ciphers,
            mac_algs=algorithms.macs,
            server_host_key_algs=algorithms.host_keys,
            connect_timeout=self.connect_timeout,
        )

    async def exec(
        self,
        handle: asyncssh.SSHClientConnection,
        command: str,
        input: Optional[str] = None,
    ) -> ExecResult:
        result = await handle.run(
            command,
            input=input,
            check=False,
            timeout=self.command_timeout,
        )
        return ExecResult(
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
            exit_status=result.exit_status if result.exit_status is not None else -1,
        )

    async def close(self, handle: asyncssh.SSHClientConnection) -> None:
        handle.close()
        await handle.wait_closed()
