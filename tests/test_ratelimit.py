from portraits.ratelimit import RATE_LIMITS, RateLimiter, TTLCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_fixed_window():
    clock = FakeClock()
    limiter = RateLimiter(clock)
    results = [limiter.hit("k", 3, 60) for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[-1].retry_after(clock.now) == 60

    clock.now += 61
    again = limiter.hit("k", 3, 60)
    assert again.allowed
    assert again.remaining == 2


def test_keys_are_independent():
    limiter = RateLimiter(FakeClock())
    assert limiter.hit("a", 1, 60).allowed
    assert not limiter.hit("a", 1, 60).allowed
    assert limiter.hit("b", 1, 60).allowed


def test_presets():
    limiter = RateLimiter(FakeClock())
    cfg = RATE_LIMITS["subscription"]
    for _ in range(cfg.max_requests):
        assert limiter.hit_preset("subscription", "42").allowed
    assert not limiter.hit_preset("subscription", "42").allowed
    limiter.reset("subscription:42")
    assert limiter.hit_preset("subscription", "42").allowed


def test_cache_expiry_and_pattern_clear():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("admin_token:a", 1)
    cache.set("admin_token:b", 2, ttl=100)
    cache.set("other", 3)
    assert cache.get("admin_token:a") == 1

    clock.now += 11
    assert cache.get("admin_token:a") is None
    assert cache.get("admin_token:b") == 2
    assert cache.stats() == {"total": 2, "valid": 1, "expired": 1}

    cache.clear(r"^admin_token:")
    assert cache.get("admin_token:b") is None
    assert cache.get("other", "gone") == "gone"
