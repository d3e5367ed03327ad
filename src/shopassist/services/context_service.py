import json
import logging
from typing import Any, Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import Session
from ..settings import get_settings
from .redis import RedisCrudService, RedisUnavailableError, get_redis_crud_service

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class StaleSessionError(RuntimeError):
    """Raised when a session write is based on an outdated version."""

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Session {session_id} changed concurrently (expected v{expected}, found v{actual})"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


def _stored_version(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        data: Dict[str, Any] = json.loads(raw)
        return int(data.get("version", 0))
    except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
        return 0


class ContextService:
    """Stores chat sessions (with their cycle state) in Redis with TTL."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    @property
    def redis(self) -> RedisCrudService:
        return self._redis

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def get_session(self, session_id: str) -> Session | None:
        """Load a session from Redis. Returns None if missing or on error."""
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def save_session(self, session: Session, expected_version: int | None = None) -> bool:
        """Persist a session with TTL. Returns True on success.

        Without ``expected_version`` the write is last-write-wins. With it, the
        write only happens if the stored version still matches, otherwise
        ``StaleSessionError`` is raised. ``session.version`` is bumped on success.
        """
        key = self._key(session.session_id)
        new_version = session.version + 1
        data = session.to_dict()
        data["version"] = new_version
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", session.session_id, e)
            return False

        if expected_version is None:
            ok = await self._redis.set(key, payload, ttl_seconds=self._ttl)
        elif not self._redis.is_connected:
            logger.warning("Session %s not saved, Redis not connected", session.session_id)
            return False
        else:
            try:
                ok = await self._versioned_write(session, key, payload, expected_version)
            except RedisUnavailableError as e:
                logger.warning("Session %s not saved, Redis unavailable: %s", session.session_id, e)
                return False

        if ok:
            session.version = new_version
        return ok

    async def _versioned_write(
        self, session: Session, key: str, payload: str, expected_version: int
    ) -> bool:
        """Compare-and-set the payload against the stored version.

        Raises ``StaleSessionError`` only when a stored version was actually
        read and differs; outages surface as ``RedisUnavailableError``.
        """
        raw = await self._redis.get_checked(key)
        actual = _stored_version(raw)
        if actual != expected_version:
            raise StaleSessionError(session.session_id, expected_version, actual)
        if await self._redis.compare_and_set(key, raw, payload, ttl_seconds=self._ttl):
            return True
        actual = _stored_version(await self._redis.get_checked(key))
        if actual != expected_version:
            raise StaleSessionError(session.session_id, expected_version, actual)
        return False

    async def delete_session(self, session_id: str) -> bool:
        """Remove a session. Returns True on success."""
        return await self._redis.delete(self._key(session_id))


# Lazy singleton for optional async init (connect to Redis)
_context_service_instance: ContextService | None = None


async def get_context_service_async() -> ContextService | None:
    """Return the context service after ensuring Redis is connected. Cached."""
    global _context_service_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    if _context_service_instance is None:
        try:
            await redis_crud.connect()
            settings = get_settings()
            _context_service_instance = ContextService(
                redis_crud=redis_crud,
                ttl_seconds=settings.context_ttl_seconds,
            )
        except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
            logger.warning("Context service unavailable (Redis): %s", e)
            return None
    return _context_service_instance


async def close_context_service() -> None:
    """Close the Redis connection used by the context service. Idempotent."""
    global _context_service_instance
    if _context_service_instance is not None:
        await _context_service_instance._redis.close()
        _context_service_instance = None
        logger.debug("Context service (Redis) closed")
