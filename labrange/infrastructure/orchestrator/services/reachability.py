"""
Reachability probe - TCP readiness checks for freshly booted guests
"""

import asyncio
from typing import Protocol

import structlog

from .retry import wait_until

logger = structlog.get_logger(__name__)


class ReachabilityProbe(Protocol):
    async def wait_until_reachable(self, host: str, port: int) -> None: ...


class TcpReachabilityProbe:
    """Polls a TCP port until it accepts connections."""

    def __init__(
        self,
        timeout: float = 120,
        interval: float = 5,
        connect_timeout: float = 3,
    ):
        self.timeout = timeout
        self.interval = interval
        self.connect_timeout = connect_timeout

    async def check_once(self, host: str, port: int) -> bool:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
            writer.close()
            await writer.wait_closed()
            return True
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("TCP probe failed", host=host, port=port, error=str(e))
            return False

    async def wait_until_reachable(self, host: str, port: int) -> None:
        """
        Block until host:port accepts a TCP connection.

        Raises:
            VMTimeoutError: if the port stays closed for the whole timeout
        """
        logger.info("Waiting for VM to become reachable", host=host, port=port)
        await wait_until(
            lambda: self.check_once(host, port),
            timeout=self.timeout,
            interval=self.interval,
            description=f"{host}:{port} to accept connections",
        )
        logger.info("VM is reachable", host=host, port=port)
