import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..settings import get_settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisUnavailableError(ConnectionError):
    """Raised when an operation needs Redis but it is not connected or not reachable."""


class RedisCrudService:
    """Async key/value access to Redis for sessions and key rotation.

    ``get``/``set``/``delete``/``exists`` degrade on outages (logged, falsy
    result). ``get_checked``, ``incr`` and ``compare_and_set`` raise
    ``RedisUnavailableError`` instead, for callers that must not confuse an
    outage with a real value.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the client and ping it. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except _TRANSIENT_ERRORS as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    def _require_client(self) -> Redis:
        if self._client is None:
            raise RedisUnavailableError("Redis is not connected")
        return self._client

    async def get_checked(self, key: str) -> str | None:
        """Return the value for key (None if missing); raise if Redis is unreachable."""
        client = self._require_client()
        try:
            value = await client.get(key)
        except _TRANSIENT_ERRORS as e:
            raise RedisUnavailableError(str(e)) from e
        return value if value is None else str(value)

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        try:
            return await self.get_checked(key)
        except RedisUnavailableError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Set key to value, expiring after ``ttl_seconds`` when given. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except _TRANSIENT_ERRORS as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if key was deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except _TRANSIENT_ERRORS as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False

    async def exists(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.exists(key))
        except _TRANSIENT_ERRORS as e:
            logger.warning("Redis exists %s failed: %s", key, e)
            return False

    async def incr(self, key: str) -> int:
        """Atomically increment key and return the new value."""
        client = self._require_client()
        try:
            return int(await client.incr(key))
        except _TRANSIENT_ERRORS as e:
            raise RedisUnavailableError(str(e)) from e

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set key to value only if its current value equals ``expected``.

        Returns False when the value differs or a concurrent writer wins the
        WATCH/MULTI race. ``expected=None`` means the key must not exist yet.
        Raises ``RedisUnavailableError`` when Redis cannot be reached.
        """
        client = self._require_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if ttl_seconds is not None and ttl_seconds > 0:
                    pipe.setex(key, ttl_seconds, value)
                else:
                    pipe.set(key, value)
                await pipe.execute()
                return True
        except WatchError:
            logger.info("Redis compare_and_set %s lost a race", key)
            return False
        except _TRANSIENT_ERRORS as e:
            raise RedisUnavailableError(str(e)) from e


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
