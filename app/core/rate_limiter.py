"""
Fixed-window rate limiting for sensitive endpoints.

Each category (otpRequest, otpVerify, rsvp, ...) keeps its own counter per
client. A window starts on a client's first request and resets wholesale
when it ends, so a client can burst up to 2x the limit across a window
boundary. That approximation is intended; do not replace it with a
sliding log without changing the documented behavior.

Counters live in a RateLimitStore. The default store is a per-process dict,
which means N instances behind a load balancer allow up to N times the rate.
RedisRateLimitStore shares counters between instances and increments them
atomically on the server.
"""

import logging
import math
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# Client identifiers that are never limited (local development)
LOCALHOST_IDS = frozenset({"127.0.0.1", "::1", "localhost", "unknown"})

CLEANUP_PROBABILITY = 0.01


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int  # epoch milliseconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int  # milliseconds until the window resets


@dataclass(frozen=True)
class RateLimitStatus:
    count: int
    remaining: int
    reset_in: int


RATE_LIMIT_CONFIGS: Dict[str, RateLimitConfig] = {
    "stream": RateLimitConfig(window_ms=HOUR_MS, max_requests=100),
    "download": RateLimitConfig(window_ms=HOUR_MS, max_requests=20),
    "checkout": RateLimitConfig(window_ms=HOUR_MS, max_requests=10),
    "contact": RateLimitConfig(window_ms=HOUR_MS, max_requests=5),
    "funding": RateLimitConfig(window_ms=HOUR_MS, max_requests=10),
    "otpRequest": RateLimitConfig(window_ms=15 * MINUTE_MS, max_requests=5),
    "otpVerify": RateLimitConfig(window_ms=15 * MINUTE_MS, max_requests=10),
    "rsvp": RateLimitConfig(window_ms=HOUR_MS, max_requests=10),
    "sponsor": RateLimitConfig(window_ms=HOUR_MS, max_requests=5),
}

DEFAULT_CONFIG = RateLimitConfig(window_ms=HOUR_MS, max_requests=100)


class RateLimitStore(Protocol):
    """
    Storage for rate limit entries, keyed by (category, client).

    incr is the only write on the request path and must be atomic: it
    starts a new window when none is active, counts the request, and
    returns the entry as it stands afterwards.
    """

    def incr(self, category: str, client_id: str, window_ms: int, now: int) -> Optional[RateLimitEntry]:
        ...

    def get(self, category: str, client_id: str, now: int) -> Optional[RateLimitEntry]:
        ...

    def delete(self, category: str, client_id: str) -> None:
        ...

    def purge_expired(self, category: str, now: int) -> int:
        ...


class InMemoryRateLimitStore:
    """
    One dict per category, held for the life of the process.

    A single lock makes incr atomic, so limiters sharing the store never
    both admit the same slot.
    """

    def __init__(self):
        self._stores: Dict[str, Dict[str, RateLimitEntry]] = {}
        self._lock = threading.Lock()

    def _store(self, category: str) -> Dict[str, RateLimitEntry]:
        return self._stores.setdefault(category, {})

    def incr(self, category: str, client_id: str, window_ms: int, now: int) -> RateLimitEntry:
        with self._lock:
            store = self._store(category)
            entry = store.get(client_id)
            if entry is None or now >= entry.reset_time:
                entry = store[client_id] = RateLimitEntry(count=0, reset_time=now + window_ms)
            entry.count += 1
            return RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    def get(self, category: str, client_id: str, now: int) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._store(category).get(client_id)
            if entry is None or now >= entry.reset_time:
                return None
            return RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    def delete(self, category: str, client_id: str) -> None:
        with self._lock:
            self._store(category).pop(client_id, None)

    def purge_expired(self, category: str, now: int) -> int:
        with self._lock:
            store = self._store(category)
            expired = [key for key, entry in store.items() if now >= entry.reset_time]
            for key in expired:
                del store[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(store) for store in self._stores.values())


# Runs atomically on the Redis server: count, start the window on the first
# hit, report the time left. A key without a TTL is repaired rather than
# left to count forever.
INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisRateLimitStore:
    """
    Redis-backed store shared by every instance.

    Each counter is a plain integer key that expires at the end of its
    window, so Redis drops stale entries itself and purge_expired has
    nothing to do. The increment runs as a Lua script, so concurrent
    instances never both see the same count.

    Redis errors are logged and the request is let through (fail open).
    """

    def __init__(self, client: Optional["redis.Redis"] = None, prefix: str = "ratelimit"):
        self.redis_client = client or redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            decode_responses=True
        )
        self.prefix = prefix
        self._incr_script = self.redis_client.register_script(INCR_SCRIPT)

    def _key(self, category: str, client_id: str) -> str:
        return f"{self.prefix}:{category}:{client_id}"

    def incr(self, category: str, client_id: str, window_ms: int, now: int) -> Optional[RateLimitEntry]:
        try:
            count, ttl = self._incr_script(keys=[self._key(category, client_id)], args=[window_ms])
        except redis.RedisError as e:
            logger.error(f"Redis rate limiter increment error: {e}")
            return None
        return RateLimitEntry(count=int(count), reset_time=now + int(ttl))

    def get(self, category: str, client_id: str, now: int) -> Optional[RateLimitEntry]:
        key = self._key(category, client_id)
        try:
            pipe = self.redis_client.pipeline()
            pipe.get(key)
            pipe.pttl(key)
            raw, ttl = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis rate limiter read error: {e}")
            return None

        if raw is None or ttl is None or int(ttl) <= 0:
            return None

        try:
            return RateLimitEntry(count=int(raw), reset_time=now + int(ttl))
        except ValueError:
            logger.warning(f"Ignoring corrupt rate limit entry for category {category}")
            return None

    def delete(self, category: str, client_id: str) -> None:
        try:
            self.redis_client.delete(self._key(category, client_id))
        except redis.RedisError as e:
            logger.error(f"Redis rate limiter delete error: {e}")

    def purge_expired(self, category: str, now: int) -> int:
        return 0


class RateLimiter:
    """
    Per-category, per-client fixed-window limiter.

    Denials come back as a RateLimitResult, never as an exception; the
    caller decides what the client sees.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Callable[[], int]] = None,
        random_source: Optional[Callable[[], float]] = None,
        cleanup_probability: float = CLEANUP_PROBABILITY,
    ):
        """
        Args:
            store: Entry storage (defaults to a fresh in-memory store)
            clock: Returns the current time in epoch milliseconds
            random_source: Returns a float in [0, 1); drives opportunistic cleanup
            cleanup_probability: Fraction of calls that sweep expired entries
        """
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock or now_ms
        self._random = random_source or random.random
        self.cleanup_probability = cleanup_probability

    @staticmethod
    def config_for(category: str, config: Optional[RateLimitConfig] = None) -> RateLimitConfig:
        """Explicit config wins, then the named table, then the default tier."""
        if config is not None:
            return config
        return RATE_LIMIT_CONFIGS.get(category, DEFAULT_CONFIG)

    def check(
        self,
        client_id: str,
        category: str,
        config: Optional[RateLimitConfig] = None
    ) -> RateLimitResult:
        """
        Count a request and decide whether it is allowed.

        Args:
            client_id: Best-effort client IP
            category: Rate limit category (e.g. "otpRequest")
            config: Optional override for the category's window and limit

        Returns:
            RateLimitResult: allowed flag, remaining requests, ms until reset
        """
        if client_id in LOCALHOST_IDS:
            return RateLimitResult(allowed=True, remaining=999, reset_in=0)

        limits = self.config_for(category, config)

        now = self._clock()

        if self._random() < self.cleanup_probability:
            self.store.purge_expired(category, now)

        # The store increments atomically; no read-then-write happens here
        entry = self.store.incr(category, client_id, limits.window_ms, now)

        if entry is None:
            # Store unavailable: fail open as if this were a fresh window
            return RateLimitResult(
                allowed=True,
                remaining=limits.max_requests - 1,
                reset_in=limits.window_ms
            )

        allowed = entry.count <= limits.max_requests
        if not allowed:
            logger.warning(f"Rate limit exceeded for category {category} (count={entry.count})")

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limits.max_requests - entry.count),
            reset_in=entry.reset_time - now
        )

    def status(
        self,
        client_id: str,
        category: str,
        config: Optional[RateLimitConfig] = None
    ) -> RateLimitStatus:
        """Report a client's current usage without counting a request."""
        limits = self.config_for(category, config)
        now = self._clock()
        entry = self.store.get(category, client_id, now)

        if entry is None:
            return RateLimitStatus(count=0, remaining=limits.max_requests, reset_in=0)

        return RateLimitStatus(
            count=entry.count,
            remaining=max(0, limits.max_requests - entry.count),
            reset_in=entry.reset_time - now
        )

    def reset(self, client_id: str, category: str) -> None:
        """
        Drop a client's counter for a category.

        Useful for testing or manual intervention.
        """
        self.store.delete(category, client_id)


def rate_limit_headers(remaining: int, reset_in: int, limit: int, now: Optional[int] = None) -> Dict[str, str]:
    """Build X-RateLimit-* response headers. Reset is in epoch seconds."""
    current = now_ms() if now is None else now
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(math.ceil((current + reset_in) / 1000)),
    }


def _build_store() -> RateLimitStore:
    if settings.RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimitStore()
    return InMemoryRateLimitStore()


# Singleton instance
rate_limiter = RateLimiter(store=_build_store())


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency returning the process-wide limiter."""
    return rate_limiter
