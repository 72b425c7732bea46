import threading

from sceneaccess.core.ratelimit import (
    InMemoryRateLimitStore,
    RateLimitBucket,
    RateLimiter,
    RateLimitPolicy,
    build_rate_limit_policies,
)
from sceneaccess.conftest import make_settings


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def test_allows_up_to_max_then_throttles():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateLimitStore(), time_fn=clock)

    decisions = [limiter.check("access_check:user:u1", 1000, 3) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[3].retry_after_ms == 1000
    assert decisions[3].retry_after_seconds == 1


def test_retry_after_shrinks_as_window_elapses():
    clock = FakeClock()
    limiter = RateLimiter(time_fn=clock)
    limiter.check("k", 1000, 1)

    clock.advance(400)
    denied = limiter.check("k", 1000, 1)

    assert not denied.allowed
    assert denied.retry_after_ms == 600


def test_window_elapsed_resets_count():
    clock = FakeClock()
    limiter = RateLimiter(time_fn=clock)
    for _ in range(4):
        limiter.check("k", 1000, 3)

    clock.advance(1000)
    after = limiter.check("k", 1000, 3)

    assert after.allowed
    assert after.count == 1


def test_keys_are_independent():
    limiter = RateLimiter(time_fn=FakeClock())
    assert limiter.check("free_slot:user:a", 60_000, 1).allowed
    assert not limiter.check("free_slot:user:a", 60_000, 1).allowed
    assert limiter.check("free_slot:user:b", 60_000, 1).allowed


def test_store_get_and_set_round_trip_copies():
    store = InMemoryRateLimitStore()
    bucket = RateLimitBucket(reset_at_ms=5000, count=2)
    store.set("k", bucket)
    bucket.count = 99

    stored = store.get("k")
    assert stored == RateLimitBucket(reset_at_ms=5000, count=2)
    assert store.get("missing") is None


def test_concurrent_hits_never_exceed_max():
    limiter = RateLimiter(InMemoryRateLimitStore())
    results = []
    lock = threading.Lock()

    def worker():
        decision = limiter.check("burst", 60_000, 10)
        with lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 10
    assert results.count(False) == 40


def test_policies_from_settings():
    cfg = make_settings(FREE_SLOT_RATE_LIMIT_MAX=5, FREE_SLOT_RATE_LIMIT_WINDOW_MS=30_000)
    policies = build_rate_limit_policies(cfg)

    assert policies["access_check"] == RateLimitPolicy(max_count=60, window_ms=60_000)
    assert policies["free_slot"] == RateLimitPolicy(max_count=5, window_ms=30_000)
    assert policies["stats"].max_count == 60


def test_check_policy_uses_policy_values():
    limiter = RateLimiter(time_fn=FakeClock())
    policy = RateLimitPolicy(max_count=1, window_ms=2000)

    assert limiter.check_policy("p", policy).allowed
    denied = limiter.check_policy("p", policy)
    assert not denied.allowed
    assert denied.retry_after_seconds == 2
