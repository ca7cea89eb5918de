"""Redis coordination infrastructure with graceful degradation."""

import uuid

import redis.asyncio as aioredis
import structlog

from commerce_sync.config import get_settings

logger = structlog.get_logger()

_redis_client: aioredis.Redis | None = None

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def get_redis_client() -> aioredis.Redis | None:
    """Get or create the global async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        try:
            _redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning("Redis unavailable, sync locks are process-local", error=str(e))
            _redis_client = None
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


class RunGuard:
    """Single-flight guard for sync runs.

    Keys are held in-process and, when Redis is reachable, with ``SET NX EX`` so
    that a scheduled run in one worker cannot overlap a run in another. Without
    Redis the guard still prevents overlap inside this process.
    """

    def __init__(self, client: aioredis.Redis | None, ttl_seconds: int = 3600):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._held: dict[str, str] = {}

    def is_held(self, key: str) -> bool:
        return key in self._held

    async def acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        token = uuid.uuid4().hex
        # Reserve locally before awaiting so concurrent callers see it
        self._held[key] = token
        if not self.client:
            return True
        try:
            acquired = await self.client.set(
                f"sync-lock:{key}", token, nx=True, ex=self.ttl_seconds
            )
        except Exception as e:
            logger.warning("Redis lock acquire failed, using local guard", key=key, error=str(e))
            return True
        if not acquired:
            del self._held[key]
            return False
        return True

    async def release(self, key: str) -> None:
        token = self._held.pop(key, None)
        if token is None or not self.client:
            return
        try:
            await self.client.eval(_RELEASE_SCRIPT, 1, f"sync-lock:{key}", token)
        except Exception as e:
            logger.warning("Redis lock release failed", key=key, error=str(e))
