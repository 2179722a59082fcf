"""
Fixed-window rate limiting for outbound provider calls.

Buckets are keyed per provider (optionally provider:account) and shared by every
worker in the process. With RATE_LIMIT_BACKEND=redis the buckets live in Redis so
several worker processes draw from one budget; when Redis is unreachable the
limiter falls back to in-process buckets.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, TypeVar

from ..config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDIS_KEY_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds when the current window ends
    retry_after: Optional[int] = None  # whole seconds to wait, set when not allowed


class MemoryBucketStore:
    """Process-wide bucket map. The lock makes check-and-increment atomic across threads."""

    def __init__(self):
        self._buckets: dict[str, dict] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, max_requests: int, window_ms: int, now: float) -> tuple[bool, int, float]:
        """Returns (allowed, remaining, reset_at)."""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket["reset_at"]:
                bucket = {"count": 1, "reset_at": now + window_ms / 1000.0, "limit": None}
                self._buckets[key] = bucket
                return True, max(0, max_requests - 1), bucket["reset_at"]
            cap = max_requests if bucket["limit"] is None else min(max_requests, bucket["limit"])
            if bucket["count"] < cap:
                bucket["count"] += 1
                return True, cap - bucket["count"], bucket["reset_at"]
            return False, 0, bucket["reset_at"]

    def set(self, key: str, count: int, reset_at: float, now: float, limit: Optional[int] = None) -> None:
        with self._lock:
            self._buckets[key] = {"count": count, "reset_at": reset_at, "limit": limit}

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            bucket = self._buckets.get(key)
            return dict(bucket) if bucket else None

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


# KEYS[1] = bucket count, KEYS[2] = provider-reported limit for the window
# ARGV[1] = max_requests, ARGV[2] = window_ms
# Returns {allowed (0/1), remaining, pttl_ms}
_HIT_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
local ttl = redis.call('PTTL', KEYS[1])
local cap = tonumber(ARGV[1])
if ttl < 0 then
  redis.call('DEL', KEYS[2])
  redis.call('SET', KEYS[1], 1, 'PX', ARGV[2])
  return {1, math.max(0, cap - 1), tonumber(ARGV[2])}
end
local limit = tonumber(redis.call('GET', KEYS[2]) or '')
if limit and limit < cap then
  cap = limit
end
if count < cap then
  count = redis.call('INCR', KEYS[1])
  return {1, cap - count, ttl}
end
return {0, 0, ttl}
"""


class RedisBucketStore:
    """Buckets shared across processes; a Lua script keeps check-and-increment atomic."""

    def __init__(self, client):
        self._client = client
        self._hit = client.register_script(_HIT_SCRIPT)

    def hit(self, key: str, max_requests: int, window_ms: int, now: float) -> tuple[bool, int, float]:
        keys = [REDIS_KEY_PREFIX + key, REDIS_KEY_PREFIX + key + ":limit"]
        allowed, remaining, ttl_ms = self._hit(keys=keys, args=[max_requests, window_ms])
        return bool(int(allowed)), int(remaining), now + max(0, int(ttl_ms)) / 1000.0

    def set(self, key: str, count: int, reset_at: float, now: float, limit: Optional[int] = None) -> None:
        ttl_ms = max(1, int((reset_at - now) * 1000))
        pipe = self._client.pipeline()
        pipe.set(REDIS_KEY_PREFIX + key, int(count), px=ttl_ms)
        if limit is None:
            pipe.delete(REDIS_KEY_PREFIX + key + ":limit")
        else:
            pipe.set(REDIS_KEY_PREFIX + key + ":limit", int(limit), px=ttl_ms)
        pipe.execute()

    def get(self, key: str) -> Optional[dict]:
        raw = self._client.get(REDIS_KEY_PREFIX + key)
        if raw is None:
            return None
        ttl_ms = self._client.pttl(REDIS_KEY_PREFIX + key)
        limit = self._client.get(REDIS_KEY_PREFIX + key + ":limit")
        return {
            "count": int(raw),
            "reset_at": time.time() + max(0, int(ttl_ms)) / 1000.0,
            "limit": int(limit) if limit is not None else None,
        }


class FixedWindowRateLimiter:
    """
    Fixed-window counter: the first call in a window opens it with count=1, later
    calls increment until max_requests, then callers are told to retry after the
    window resets.
    """

    def __init__(
        self,
        store=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store if store is not None else MemoryBucketStore()
        self._clock = clock
        self._sleep = sleep

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        allowed, remaining, reset_at = self.store.hit(key, config.max_requests, config.window_ms, now)
        if allowed:
            return RateLimitResult(allowed=True, remaining=remaining, reset_at=reset_at)
        retry_after = max(1, math.ceil(reset_at - now))
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

    def wait(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Block cooperatively until the bucket admits this call."""
        result = self.check(key, config)
        while not result.allowed:
            logger.info(f"Rate limit reached for {key}; sleeping {result.retry_after}s")
            self._sleep(result.retry_after)
            result = self.check(key, config)
        return result

    def run(self, key: str, config: RateLimitConfig, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self.wait(key, config)
        return fn(*args, **kwargs)

    def batch(
        self,
        items: Sequence,
        batch_size: int,
        key: str,
        config: RateLimitConfig,
        fn: Callable[[list], T],
    ) -> list[T]:
        """Run fn over fixed-size batches one after another, waiting for the bucket before each."""
        results = []
        for chunk in chunk_list(list(items), batch_size):
            self.wait(key, config)
            results.append(fn(chunk))
        return results

    def update_from_headers(
        self,
        key: str,
        limit: Optional[int],
        remaining: Optional[int],
        reset: Optional[float],
    ) -> bool:
        """
        Overwrite the bucket with the provider's own accounting. The provider's
        limit caps the local budget until the window resets, so remaining=0
        blocks further calls even when max_requests is larger.

        reset is accepted either as epoch seconds or as seconds until reset.
        Returns False (and leaves the bucket alone) when any header is missing.
        """
        if limit is None or remaining is None or reset is None:
            return False
        now = self._clock()
        reset = float(reset)
        reset_at = reset if reset >= 1e9 else now + reset
        if reset_at <= now:
            return False
        count = max(0, int(limit) - int(remaining))
        self.store.set(key, count, reset_at, now, limit=int(limit))
        return True


def chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def config_for_provider(provider: str) -> RateLimitConfig:
    """Per-provider budget from settings, with the "default" tier as fallback."""
    limits = settings.provider_rate_limits
    entry = limits.get((provider or "").lower()) or limits.get("default")
    if entry is None:
        return RateLimitConfig(max_requests=100, window_ms=60_000)
    return RateLimitConfig(max_requests=entry.max_requests, window_ms=entry.window_ms)


def bucket_key(provider: str, account_id: Optional[int] = None) -> str:
    provider = (provider or "default").lower()
    if settings.rate_limit_per_account and account_id is not None:
        return f"{provider}:{account_id}"
    return provider


_limiter: Optional[FixedWindowRateLimiter] = None
_limiter_lock = threading.Lock()


def _build_store():
    if (settings.rate_limit_backend or "memory").lower() != "redis":
        return MemoryBucketStore()
    try:
        import redis
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
        logger.debug("Rate limiter using Redis buckets")
        return RedisBucketStore(client)
    except Exception as e:
        logger.warning(f"Redis unavailable for rate limiting: {e}. Using in-process buckets.")
        return MemoryBucketStore()


def get_rate_limiter() -> FixedWindowRateLimiter:
    """Process-wide limiter, created on first use."""
    global _limiter
    if _limiter is not None:
        return _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = FixedWindowRateLimiter(_build_store())
    return _limiter


def set_rate_limiter(limiter: Optional[FixedWindowRateLimiter]) -> None:
    """Replace the process-wide limiter (None resets to lazy creation)."""
    global _limiter
    with _limiter_lock:
        _limiter = limiter


def check_rate_limit(key: str, config: RateLimitConfig) -> RateLimitResult:
    return get_rate_limiter().check(key, config)


def wait_for_rate_limit(key: str, config: RateLimitConfig) -> RateLimitResult:
    return get_rate_limiter().wait(key, config)


def with_rate_limit(key: str, config: RateLimitConfig, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return get_rate_limiter().run(key, config, fn, *args, **kwargs)


def batch_with_rate_limit(
    items: Sequence,
    batch_size: int,
    key: str,
    config: RateLimitConfig,
    fn: Callable[[list], T],
) -> list[T]:
    return get_rate_limiter().batch(items, batch_size, key, config, fn)


def update_from_headers(key: str, limit: Optional[int], remaining: Optional[int], reset: Optional[float]) -> bool:
    return get_rate_limiter().update_from_headers(key, limit, remaining, reset)
