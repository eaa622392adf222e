"""
Notification sinks - session lifecycle events for the rest of the platform

Events: session_started, session_running, session_failed, session_extended,
session_stopped, flag_result.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Protocol

import structlog

from labrange.infrastructure.cache import CacheManager

logger = structlog.get_logger(__name__)


class NotificationSink(Protocol):
    async def publish(self, event: str, payload: Dict[str, Any]) -> None: ...


class LogNotificationSink:
    """Writes events to the structured log only."""

    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("Session event", notification=event, **payload)


class RedisNotificationSink:
    """Publishes events on a Redis pub/sub channel."""

    def __init__(self, cache: CacheManager, channel: str = "labrange:events"):
        self.cache = cache
        self.channel = channel

    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        message = {
            "type": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if not await self.cache.publish(self.channel, message):
            logger.warning("Event not published", notification=event, channel=self.channel)

