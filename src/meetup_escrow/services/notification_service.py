"""Notification Service — fire-and-forget delivery of domain events.

Dispatchers:
    - LoggingNotificationDispatcher: writes each event to the structured log.
    - RedisNotificationDispatcher: publishes each event as JSON on a Redis
      channel; email/SMS/push workers subscribe downstream.

NotificationService wraps a dispatcher so that a failed emit is logged and
never reaches the caller. Each emit is bounded by a timeout. Events are published only after the state change
they describe has been saved.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from meetup_escrow.infrastructure.redis_client import publish_json
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from meetup_escrow.domain.collaborators import DomainEvent, NotificationDispatcher

logger = get_logger(__name__)


class LoggingNotificationDispatcher:
    """Dispatcher that only logs. Used when Redis is unavailable."""

    async def emit(self, event: DomainEvent) -> None:
        logger.info(
            "notification.emitted",
            event_type=event.event_type.value,
            transaction_id=event.transaction_id,
            recipients=list(event.recipients),
        )


class RedisNotificationDispatcher:
    """Publishes events to a Redis pub/sub channel."""

    def __init__(self, channel: str, client: aioredis.Redis | None = None) -> None:
        self._channel = channel
        self._client = client

    async def emit(self, event: DomainEvent) -> None:
        receivers = await publish_json(self._channel, event.to_dict(), client=self._client)
        logger.debug(
            "notification.published",
            channel=self._channel,
            event_type=event.event_type.value,
            transaction_id=event.transaction_id,
            receivers=receivers,
        )


class NotificationService:
    """Swallows and logs dispatcher failures."""

    def __init__(self, dispatcher: NotificationDispatcher, timeout_seconds: float = 5.0) -> None:
        self._dispatcher = dispatcher
        self._timeout = timeout_seconds

    async def publish(self, event: DomainEvent) -> bool:
        """Emit an event. Returns False if the dispatcher raised or timed out."""
        try:
            async with asyncio.timeout(self._timeout):
                await self._dispatcher.emit(event)
        except TimeoutError:
            logger.warning(
                "notification.emit_timed_out",
                event_type=event.event_type.value,
                transaction_id=event.transaction_id,
                timeout_seconds=self._timeout,
            )
            return False
        except Exception as exc:
            logger.warning(
                "notification.emit_failed",
                event_type=event.event_type.value,
                transaction_id=event.transaction_id,
                error=str(exc),
            )
            return False
        return True
