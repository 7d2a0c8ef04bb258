import json
from typing import Any
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from app.settings import NOTIFICATIONS_QUEUE, REDIS_URL

_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


class Notifier:
    """
    Pushes outbound notifications onto a Redis list consumed by the
    notifications worker. Delivery is fire-and-forget: a failed push is
    logged and never reaches the caller.
    """

    def __init__(self, redis: Redis | None = None, queue: str = NOTIFICATIONS_QUEUE):
        self._redis = redis
        self._queue = queue

    @property
    def redis(self) -> Redis:
        return self._redis if self._redis is not None else get_redis()

    async def _push(self, channel: str, payload: dict[str, Any]) -> bool:
        message = json.dumps({"channel": channel, **payload}, default=str)
        try:
            await self.redis.rpush(self._queue, message)
            return True
        except Exception:
            logger.warning("Notification push failed for channel={}", channel, exc_info=True)
            return False

    async def send_email(self, to: str | None, template: str, data: dict[str, Any]) -> bool:
        if not to:
            logger.debug("No email address, skipping template={}", template)
            return False
        return await self._push("email", {"to": to, "template": template, "data": data})

    async def send_sms(self, to: str | None, event: str, data: dict[str, Any]) -> bool:
        if not to:
            logger.debug("No phone number, skipping sms event={}", event)
            return False
        return await self._push("sms", {"to": to, "event": event, "data": data})

    async def send_host_message(self, host_id: UUID, booking_id: UUID, message: str) -> bool:
        return await self._push(
            "host_message",
            {"host_id": host_id, "booking_id": booking_id, "message": message},
        )

    async def send_guest_message(self, guest_id: UUID, booking_id: UUID, message: str) -> bool:
        return await self._push(
            "guest_message",
            {"guest_id": guest_id, "booking_id": booking_id, "message": message},
        )


_notifier = Notifier()


def get_notifier() -> Notifier:
    return _notifier
