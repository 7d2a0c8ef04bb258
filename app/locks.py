from uuid import UUID, uuid4

from loguru import logger
from redis.asyncio import Redis

from app.outbox import get_redis

# Compare-and-delete so a lock whose TTL expired mid-attempt is never
# released out from under the worker that re-acquired it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _charge_key(booking_id: UUID, charge_id: UUID) -> str:
    return f"charge-lock:{booking_id}:{charge_id}"


class ChargeLock:
    """
    Short-lived processing lock per (booking, trip charge).

    When Redis is unreachable the lock degrades to "acquired" and the
    compare-and-set on the charge row remains the only guard.
    """

    def __init__(self, ttl_seconds: int = 120, redis: Redis | None = None):
        self._ttl = ttl_seconds
        self._redis = redis
        self._tokens: dict[str, str] = {}

    @property
    def redis(self) -> Redis:
        return self._redis if self._redis is not None else get_redis()

    async def acquire(self, booking_id: UUID, charge_id: UUID) -> bool:
        key = _charge_key(booking_id, charge_id)
        token = uuid4().hex
        try:
            acquired = await self.redis.set(key, token, nx=True, ex=self._ttl)
        except Exception:
            logger.warning("Redis lock unavailable for {}, relying on row CAS", key, exc_info=True)
            return True
        if acquired:
            self._tokens[key] = token
        return bool(acquired)

    async def release(self, booking_id: UUID, charge_id: UUID) -> None:
        key = _charge_key(booking_id, charge_id)
        token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, key, token)
        except Exception:
            logger.warning("Redis lock release failed for {}", key, exc_info=True)
