"""
Tests for the fixed-window rate limiter.

Tests:
- Window behavior and reset
- Category isolation and the default tier
- Localhost bypass
- Opportunistic cleanup of expired entries
- Concurrent increments
- Redis-backed store (with an in-memory fake client)
"""

import threading
import time

import pytest
import redis

from app.core.rate_limiter import (
    DEFAULT_CONFIG,
    HOUR_MS,
    MINUTE_MS,
    RATE_LIMIT_CONFIGS,
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimiter,
    RedisRateLimitStore,
    rate_limit_headers,
)

CLIENT = "203.0.113.5"
SMALL = RateLimitConfig(window_ms=60_000, max_requests=5)


class FakeRedis:
    """
    Just enough of redis.Redis for the store.

    The registered script runs under a lock, the way Redis runs a Lua
    script with nothing interleaved. `latency` widens any race window.
    """

    def __init__(self, clock, latency=0.0):
        self.clock = clock
        self.latency = latency
        self.data = {}
        self.expires_at = {}
        self._lock = threading.Lock()
        self.scripts = []

    def _expire_stale(self, key):
        deadline = self.expires_at.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    def _pttl(self, key):
        self._expire_stale(key)
        if key not in self.data:
            return -2
        if key not in self.expires_at:
            return -1
        return self.expires_at[key] - self.clock()

    def get(self, key):
        self._expire_stale(key)
        return self.data.get(key)

    def pttl(self, key):
        return self._pttl(key)

    def delete(self, key):
        self.data.pop(key, None)
        self.expires_at.pop(key, None)
        return 1

    def pipeline(self):
        return FakePipeline(self)

    def register_script(self, script):
        self.scripts.append(script)

        def run(keys, args):
            (key,), (window_ms,) = keys, args
            with self._lock:
                self._expire_stale(key)
                count = int(self.data.get(key, 0)) + 1
                time.sleep(self.latency)
                self.data[key] = str(count)
                ttl = self._pttl(key)
                if count == 1 or ttl < 0:
                    self.expires_at[key] = self.clock() + int(window_ms)
                    ttl = int(window_ms)
                return [count, ttl]

        return run


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def get(self, key):
        self.ops.append(lambda: self.client.get(key))

    def pttl(self, key):
        self.ops.append(lambda: self.client.pttl(key))

    def execute(self):
        return [op() for op in self.ops]


class BrokenRedis:
    def register_script(self, script):
        def run(keys, args):
            raise redis.ConnectionError("down")
        return run

    def pipeline(self):
        raise redis.ConnectionError("down")

    def delete(self, key):
        raise redis.ConnectionError("down")


def _hammer(limiters, config, calls_each):
    """Run every limiter's checks concurrently; return all allowed flags."""
    allowed = []
    barrier = threading.Barrier(len(limiters))

    def worker(limiter):
        barrier.wait()
        for _ in range(calls_each):
            allowed.append(limiter.check(CLIENT, "x", config).allowed)

    threads = [threading.Thread(target=worker, args=(limiter,)) for limiter in limiters]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return allowed


@pytest.fixture
def limiter(clock):
    # Cleanup disabled unless a test turns it on
    return RateLimiter(clock=clock, random_source=lambda: 0.5, cleanup_probability=0.0)


class TestConfiguration:
    """Named categories and the default tier"""

    def test_named_categories(self):
        assert RATE_LIMIT_CONFIGS["otpRequest"] == RateLimitConfig(15 * MINUTE_MS, 5)
        assert RATE_LIMIT_CONFIGS["otpVerify"] == RateLimitConfig(15 * MINUTE_MS, 10)
        assert RATE_LIMIT_CONFIGS["rsvp"] == RateLimitConfig(HOUR_MS, 10)
        assert RATE_LIMIT_CONFIGS["sponsor"] == RateLimitConfig(HOUR_MS, 5)
        assert RATE_LIMIT_CONFIGS["stream"] == RateLimitConfig(HOUR_MS, 100)
        assert RATE_LIMIT_CONFIGS["download"] == RateLimitConfig(HOUR_MS, 20)
        assert RATE_LIMIT_CONFIGS["checkout"] == RateLimitConfig(HOUR_MS, 10)
        assert RATE_LIMIT_CONFIGS["contact"] == RateLimitConfig(HOUR_MS, 5)
        assert RATE_LIMIT_CONFIGS["funding"] == RateLimitConfig(HOUR_MS, 10)

    def test_unknown_category_uses_default(self, limiter):
        assert DEFAULT_CONFIG == RateLimitConfig(HOUR_MS, 100)
        result = limiter.check(CLIENT, "no-such-category")
        assert result.allowed
        assert result.remaining == 99
        assert result.reset_in == HOUR_MS

    def test_explicit_config_overrides_table(self, limiter):
        result = limiter.check(CLIENT, "stream", RateLimitConfig(1000, 1))
        assert result.remaining == 0
        assert not limiter.check(CLIENT, "stream", RateLimitConfig(1000, 1)).allowed


class TestWindow:
    """Fixed-window counting"""

    def test_limit_then_reset(self, limiter, clock):
        for _ in range(5):
            assert limiter.check(CLIENT, "x", SMALL).allowed

        denied = limiter.check(CLIENT, "x", SMALL)
        assert not denied.allowed
        assert denied.remaining == 0

        clock.advance(60_000)
        fresh = limiter.check(CLIENT, "x", SMALL)
        assert fresh.allowed
        assert fresh.remaining == 4
        assert limiter.status(CLIENT, "x", SMALL).count == 1

    def test_otp_request_scenario(self, limiter, clock):
        results = [limiter.check(CLIENT, "otpRequest") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5].reset_in > 0

    def test_reset_in_counts_down(self, limiter, clock):
        limiter.check(CLIENT, "x", SMALL)
        clock.advance(10_000)
        assert limiter.check(CLIENT, "x", SMALL).reset_in == 50_000

    def test_burst_across_window_boundary_is_allowed(self, limiter, clock):
        """Fixed window: up to 2x max across a boundary"""
        limiter.check(CLIENT, "x", SMALL)
        clock.advance(59_000)
        for _ in range(4):
            assert limiter.check(CLIENT, "x", SMALL).allowed
        clock.advance(1_000)
        for _ in range(5):
            assert limiter.check(CLIENT, "x", SMALL).allowed

    def test_denied_requests_keep_counting(self, limiter):
        for _ in range(8):
            limiter.check(CLIENT, "x", SMALL)
        assert limiter.status(CLIENT, "x", SMALL).count == 8


class TestIsolation:
    """Counters never leak between categories or clients"""

    def test_categories_are_independent(self, limiter):
        for _ in range(6):
            limiter.check(CLIENT, "x", SMALL)
        assert not limiter.check(CLIENT, "x", SMALL).allowed

        result = limiter.check(CLIENT, "y", SMALL)
        assert result.allowed
        assert result.remaining == 4

    def test_clients_are_independent(self, limiter):
        for _ in range(6):
            limiter.check(CLIENT, "x", SMALL)
        assert limiter.check("198.51.100.7", "x", SMALL).allowed


class TestBypass:
    """Local and unknown clients are never limited"""

    @pytest.mark.parametrize("client_id", ["127.0.0.1", "::1", "localhost", "unknown"])
    def test_local_clients_always_allowed(self, limiter, client_id):
        for _ in range(50):
            result = limiter.check(client_id, "x", SMALL)
            assert result.allowed
            assert result.remaining == 999
            assert result.reset_in == 0

    def test_bypass_does_not_create_entries(self, limiter):
        limiter.check("unknown", "x", SMALL)
        assert len(limiter.store) == 0


class TestStatusAndReset:

    def test_status_does_not_count(self, limiter):
        limiter.check(CLIENT, "x", SMALL)
        limiter.status(CLIENT, "x", SMALL)
        status = limiter.status(CLIENT, "x", SMALL)
        assert status.count == 1
        assert status.remaining == 4

    def test_status_for_unseen_client(self, limiter):
        status = limiter.status(CLIENT, "x", SMALL)
        assert (status.count, status.remaining, status.reset_in) == (0, 5, 0)

    def test_reset_clears_counter(self, limiter):
        for _ in range(6):
            limiter.check(CLIENT, "x", SMALL)
        limiter.reset(CLIENT, "x")
        assert limiter.check(CLIENT, "x", SMALL).allowed


class TestCleanup:
    """Expired entries are eventually removable and never block requests"""

    def test_sweep_removes_expired_entries(self, clock):
        limiter = RateLimiter(clock=clock, random_source=lambda: 0.0, cleanup_probability=1.0)
        limiter.check("198.51.100.1", "x", SMALL)
        limiter.check("198.51.100.2", "x", SMALL)
        assert len(limiter.store) == 2

        clock.advance(60_000)
        limiter.check(CLIENT, "x", SMALL)
        assert len(limiter.store) == 1

    def test_sweep_only_touches_its_category(self, clock):
        limiter = RateLimiter(clock=clock, random_source=lambda: 0.0, cleanup_probability=1.0)
        limiter.check("198.51.100.1", "y", SMALL)
        clock.advance(60_000)
        limiter.check(CLIENT, "x", SMALL)
        assert len(limiter.store) == 2

    def test_expired_entry_does_not_block_without_sweep(self, limiter, clock):
        for _ in range(6):
            limiter.check(CLIENT, "x", SMALL)
        clock.advance(60_000)
        assert limiter.check(CLIENT, "x", SMALL).allowed

    def test_purge_expired_on_store(self):
        store = InMemoryRateLimitStore()
        store.incr("x", "a", 100, now=0)
        store.incr("x", "b", 300, now=0)
        assert store.purge_expired("x", now=200) == 1
        assert store.get("x", "a", now=0) is None
        assert store.get("x", "b", now=0) is not None


class TestConcurrency:

    def test_concurrent_checks_never_exceed_limit(self):
        limiter = RateLimiter(cleanup_probability=0.0)
        config = RateLimitConfig(window_ms=HOUR_MS, max_requests=10)

        allowed = _hammer([limiter] * 20, config, calls_each=5)

        assert allowed.count(True) == 10
        assert limiter.status(CLIENT, "x", config).count == 100

    def test_limiters_sharing_a_memory_store_never_exceed_limit(self, clock):
        store = InMemoryRateLimitStore()
        limiters = [RateLimiter(store=store, clock=clock, cleanup_probability=0.0) for _ in range(2)]

        allowed = _hammer(limiters, SMALL, calls_each=10)

        assert allowed.count(True) == 5
        assert limiters[0].status(CLIENT, "x", SMALL).count == 20

    def test_limiters_sharing_redis_never_exceed_limit(self, clock):
        """Two instances with their own store objects over one Redis"""
        fake = FakeRedis(clock, latency=0.01)
        limiters = [
            RateLimiter(store=RedisRateLimitStore(client=fake), clock=clock, cleanup_probability=0.0)
            for _ in range(2)
        ]

        allowed = _hammer(limiters, SMALL, calls_each=10)

        assert allowed.count(True) == 5
        assert fake.data[f"ratelimit:x:{CLIENT}"] == "20"


class TestRedisStore:

    def test_limiter_over_redis_store(self, clock):
        fake = FakeRedis(clock)
        limiter = RateLimiter(store=RedisRateLimitStore(client=fake), clock=clock, cleanup_probability=0.0)

        for _ in range(5):
            assert limiter.check(CLIENT, "x", SMALL).allowed
        assert not limiter.check(CLIENT, "x", SMALL).allowed

        key = f"ratelimit:x:{CLIENT}"
        assert fake.data[key] == "6"
        assert fake.expires_at[key] == clock() + 60_000
        assert len(fake.scripts) == 1

        clock.advance(60_000)
        assert limiter.check(CLIENT, "x", SMALL).allowed

    def test_reset_in_comes_from_server_ttl(self, clock):
        fake = FakeRedis(clock)
        limiter = RateLimiter(store=RedisRateLimitStore(client=fake), clock=clock, cleanup_probability=0.0)

        limiter.check(CLIENT, "x", SMALL)
        clock.advance(15_000)

        assert limiter.check(CLIENT, "x", SMALL).reset_in == 45_000
        status = limiter.status(CLIENT, "x", SMALL)
        assert (status.count, status.remaining, status.reset_in) == (2, 3, 45_000)

    def test_counter_without_ttl_gets_one(self, clock):
        fake = FakeRedis(clock)
        key = f"ratelimit:x:{CLIENT}"
        fake.data[key] = "3"

        entry = RedisRateLimitStore(client=fake).incr("x", CLIENT, 60_000, now=clock())

        assert entry.count == 4
        assert fake.expires_at[key] == clock() + 60_000

    def test_corrupt_entry_is_discarded(self, clock):
        fake = FakeRedis(clock)
        key = f"ratelimit:x:{CLIENT}"
        fake.data[key] = "not-a-number"
        fake.expires_at[key] = clock() + 60_000
        assert RedisRateLimitStore(client=fake).get("x", CLIENT, now=clock()) is None

    def test_redis_errors_fail_open(self, clock):
        limiter = RateLimiter(store=RedisRateLimitStore(client=BrokenRedis()), clock=clock, cleanup_probability=0.0)
        for _ in range(10):
            assert limiter.check(CLIENT, "x", SMALL).allowed
        assert limiter.status(CLIENT, "x", SMALL).count == 0
        limiter.reset(CLIENT, "x")


class TestHeaders:

    def test_rate_limit_headers(self):
        headers = rate_limit_headers(remaining=3, reset_in=1_500, limit=5, now=10_000)
        assert headers == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "3",
            "X-RateLimit-Reset": "12",
        }
