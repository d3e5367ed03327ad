import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, NamedTuple, Sequence

from .redis import RedisCrudService, RedisUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "keyrotator:"


class NoCredentialsAvailable(ValueError):
    """Raised when a rotator is built without any credentials."""


class KeySelection(NamedTuple):
    """Selected credential. ``error`` is set when rotation degraded to key 0."""

    key: str
    index: int
    error: str | None = None


@dataclass
class KeyUsage:
    total: int = 0
    success: int = 0
    failure: int = 0
    latency_sum_ms: float = 0.0
    latency_count: int = 0


@dataclass(frozen=True)
class KeyStats:
    key_index: int
    total: int
    success_count: int
    failure_count: int
    avg_latency_ms: float | None

    def to_dict(self) -> Dict[str, object]:
        return {
            "key_index": self.key_index,
            "total_usage": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_response_time_ms": self.avg_latency_ms,
        }


def seconds_until_end_of_day(now: datetime) -> int:
    """Seconds until 23:59:59 UTC; a full day when less than a minute is left."""
    now = now.astimezone(timezone.utc)
    end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=0)
    ttl = end_of_day - now
    if ttl < timedelta(minutes=1):
        ttl = timedelta(hours=24)
    return int(ttl.total_seconds())


class KeyRotator:
    """Round-robin rotation over an API key pool using a shared Redis counter.

    The atomic INCR is the only synchronisation between concurrent callers:
    each caller gets a distinct counter value and maps it onto the pool.
    If Redis is unavailable the rotator fails open to the first key.
    """

    def __init__(
        self,
        service_name: str,
        keys: Sequence[str],
        redis_crud: RedisCrudService | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if not keys:
            raise NoCredentialsAvailable(f"No API keys available for {service_name}")
        self._service = service_name
        self._keys = tuple(keys)
        self._redis = redis_crud
        self._clock = clock
        self._usage_lock = threading.Lock()
        self._usage: List[KeyUsage] = [KeyUsage() for _ in self._keys]

    @property
    def service_name(self) -> str:
        return self._service

    @property
    def total_keys(self) -> int:
        return len(self._keys)

    def _counter_key(self) -> str:
        return f"{KEY_PREFIX}{self._service}:counter"

    def _exhausted_key(self, index: int) -> str:
        return f"{KEY_PREFIX}{self._service}:exhausted:{index}"

    async def next_key(self) -> KeySelection:
        """Return the next key in rotation, skipping keys marked exhausted."""
        if not self._keys:
            raise NoCredentialsAvailable(f"No API keys available for {self._service}")

        if len(self._keys) == 1:
            return KeySelection(self._keys[0], 0)

        if self._redis is None:
            return self._fallback("key rotation store not configured")

        for _ in range(len(self._keys)):
            try:
                counter = await self._redis.incr(self._counter_key())
            except RedisUnavailableError as e:
                return self._fallback(f"redis error: {e}")

            index = (counter - 1) % len(self._keys)
            if not await self._redis.exists(self._exhausted_key(index)):
                return KeySelection(self._keys[index], index)
            logger.info("Key %d of %s is exhausted, trying next key", index, self._service)

        return self._fallback("all API keys are exhausted")

    def _fallback(self, reason: str) -> KeySelection:
        message = f"{reason}; using first key for {self._service}"
        logger.warning("Key rotation degraded: %s", message)
        return KeySelection(self._keys[0], 0, message)

    async def mark_exhausted(self, index: int) -> bool:
        """Skip this key until the end of the UTC day. Returns True on success."""
        if self._redis is None or not 0 <= index < len(self._keys):
            return False
        ttl = seconds_until_end_of_day(self._clock())
        ok = await self._redis.set(self._exhausted_key(index), "1", ttl_seconds=ttl)
        if ok:
            logger.warning(
                "Key %d of %s marked as exhausted for %d seconds", index, self._service, ttl
            )
        return ok

    async def reset_counter(self) -> bool:
        if self._redis is None:
            return False
        return await self._redis.delete(self._counter_key())

    def key_by_index(self, index: int) -> str:
        if not 0 <= index < len(self._keys):
            raise IndexError(f"Invalid key index: {index}")
        return self._keys[index]

    def record_usage(self, index: int, success: bool, latency_ms: float) -> None:
        """Accumulate usage for a key. Never raises."""
        if not 0 <= index < len(self._keys):
            logger.warning("Ignoring usage for invalid key index %s of %s", index, self._service)
            return
        try:
            latency = max(0.0, float(latency_ms))
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring invalid latency %r for %s: %s", latency_ms, self._service, e)
            latency = None
        with self._usage_lock:
            usage = self._usage[index]
            usage.total += 1
            if success:
                usage.success += 1
            else:
                usage.failure += 1
            if latency is not None:
                usage.latency_sum_ms += latency
                usage.latency_count += 1

    def stats(self, index: int) -> KeyStats:
        if not 0 <= index < len(self._keys):
            raise IndexError(f"Invalid key index: {index}")
        with self._usage_lock:
            usage = self._usage[index]
            avg = (
                usage.latency_sum_ms / usage.latency_count if usage.latency_count else None
            )
            return KeyStats(
                key_index=index,
                total=usage.total,
                success_count=usage.success,
                failure_count=usage.failure,
                avg_latency_ms=avg,
            )

    def all_stats(self) -> List[KeyStats]:
        return [self.stats(i) for i in range(len(self._keys))]
