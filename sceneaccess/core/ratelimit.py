"""
Fixed-window rate limiter for abuse-prone endpoints.

- Keyed by "<operation>:<identity>" (user id, or client ip for anonymous callers).
- Bucket state lives behind a RateLimitStore: in-process by default, Redis when
  the limit has to hold across replicas.
- Fixed windows allow up to 2x max requests across a window boundary. With the
  in-memory store the effective limit is max x replica count.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import redis


logger = logging.getLogger("sceneaccess")


@dataclass
class RateLimitBucket:
    reset_at_ms: int
    count: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0
    count: int = 0
    reset_at_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after_ms / 1000)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_count: int
    window_ms: int


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[RateLimitBucket]:
        ...

    def set(self, key: str, bucket: RateLimitBucket) -> None:
        ...

    def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitBucket:
        """Atomically start a new window or increment the current one."""
        ...


class InMemoryRateLimitStore:
    """Process-local bucket map. Every read-check-increment runs under one lock."""

    def __init__(self):
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateLimitBucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            return RateLimitBucket(bucket.reset_at_ms, bucket.count) if bucket else None

    def set(self, key: str, bucket: RateLimitBucket) -> None:
        with self._lock:
            self._buckets[key] = RateLimitBucket(bucket.reset_at_ms, bucket.count)

    def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitBucket:
        with self._lock:
            existing = self._buckets.get(key)
            if existing is None or existing.reset_at_ms <= now_ms:
                existing = RateLimitBucket(reset_at_ms=now_ms + window_ms, count=1)
                self._buckets[key] = existing
            else:
                existing.count += 1
            return RateLimitBucket(existing.reset_at_ms, existing.count)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisRateLimitStore:
    """
    Shared fixed-window store.

    The window is opened with SET NX PX and counted with INCR inside one MULTI,
    so the key always carries its expiry. Fails open on Redis errors.
    """

    def __init__(self, client: redis.Redis, prefix: str = "ratelimit:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "ratelimit:") -> "RedisRateLimitStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[RateLimitBucket]:
        pipe = self.client.pipeline(transaction=True)
        pipe.get(self._key(key))
        pipe.pttl(self._key(key))
        raw, ttl = pipe.execute()
        if raw is None or ttl is None or ttl < 0:
            return None
        return RateLimitBucket(reset_at_ms=_now_ms() + int(ttl), count=int(raw))

    def set(self, key: str, bucket: RateLimitBucket) -> None:
        ttl = max(1, bucket.reset_at_ms - _now_ms())
        self.client.set(self._key(key), bucket.count, px=ttl)

    def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitBucket:
        redis_key = self._key(key)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(redis_key, 0, px=window_ms, nx=True)
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            _, count, ttl = pipe.execute()
            if ttl is None or ttl < 0:
                # Key lost its expiry; restart the window from now
                self.client.pexpire(redis_key, window_ms)
                ttl = window_ms
            return RateLimitBucket(reset_at_ms=now_ms + int(ttl), count=int(count))
        except redis.RedisError as e:
            logger.warning("ratelimit.redis_error", extra={"error_code": "redis_error", "reason": str(e)})
            return RateLimitBucket(reset_at_ms=now_ms + window_ms, count=0)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    def __init__(self, store: Optional[RateLimitStore] = None, time_fn: Optional[Callable[[], int]] = None):
        self.store = store or InMemoryRateLimitStore()
        self.time_fn = time_fn or _now_ms

    def check(self, key: str, window_ms: int, max_count: int) -> RateLimitDecision:
        now = self.time_fn()
        bucket = self.store.hit(key, window_ms, now)
        if bucket.count > max_count:
            return RateLimitDecision(
                allowed=False,
                retry_after_ms=max(0, bucket.reset_at_ms - now),
                count=bucket.count,
                reset_at_ms=bucket.reset_at_ms,
            )
        return RateLimitDecision(allowed=True, count=bucket.count, reset_at_ms=bucket.reset_at_ms)

    def check_policy(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        return self.check(key, policy.window_ms, policy.max_count)


def build_rate_limit_store(cfg) -> RateLimitStore:
    if getattr(cfg, "RATE_LIMIT_BACKEND", "memory") == "redis":
        return RedisRateLimitStore.from_url(cfg.REDIS_URL)
    return InMemoryRateLimitStore()


def build_rate_limit_policies(cfg) -> Dict[str, RateLimitPolicy]:
    def _policy(max_count: int, window_ms: int) -> RateLimitPolicy:
        return RateLimitPolicy(max_count=max(1, int(max_count)), window_ms=max(1, int(window_ms)))

    return {
        "access_check": _policy(cfg.ACCESS_CHECK_RATE_LIMIT_MAX, cfg.ACCESS_CHECK_RATE_LIMIT_WINDOW_MS),
        "free_slot": _policy(cfg.FREE_SLOT_RATE_LIMIT_MAX, cfg.FREE_SLOT_RATE_LIMIT_WINDOW_MS),
        "stats": _policy(cfg.STATS_RATE_LIMIT_MAX, cfg.STATS_RATE_LIMIT_WINDOW_MS),
    }
