import threading

import pytest

from mailsync.config import settings
from mailsync.providers import RateLimitHeaders
from mailsync.services import rate_limiter as rl
from mailsync.services.rate_limiter import (
    FixedWindowRateLimiter,
    MemoryBucketStore,
    RateLimitConfig,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock):
    return FixedWindowRateLimiter(MemoryBucketStore(), clock=clock, sleep=clock.sleep)


def test_first_call_opens_window():
    clock = FakeClock()
    limiter = _limiter(clock)
    result = limiter.check("gmail", RateLimitConfig(max_requests=5, window_ms=1000))
    assert result.allowed
    assert result.remaining == 4
    assert result.reset_at == pytest.approx(clock.now + 1.0)
    assert result.retry_after is None


def test_burst_of_300_against_gmail_limit_allows_250():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = rl.config_for_provider("gmail")
    assert config == RateLimitConfig(max_requests=250, window_ms=1000)

    results = [limiter.check("gmail", config) for _ in range(300)]
    allowed = [r for r in results if r.allowed]
    rejected = [r for r in results if not r.allowed]
    assert len(allowed) == 250
    assert len(rejected) == 50
    assert all(r.retry_after >= 1 for r in rejected)
    assert all(r.remaining == 0 for r in rejected)


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=2, window_ms=60_000)
    assert limiter.check("k", config).allowed
    assert limiter.check("k", config).allowed
    blocked = limiter.check("k", config)
    assert not blocked.allowed
    assert blocked.retry_after == 60

    clock.now += 60
    again = limiter.check("k", config)
    assert again.allowed
    assert again.remaining == 1


def test_buckets_are_independent_per_key():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=1, window_ms=1000)
    assert limiter.check("gmail", config).allowed
    assert not limiter.check("gmail", config).allowed
    assert limiter.check("microsoft", config).allowed


def test_wait_sleeps_until_window_resets():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=1, window_ms=3000)
    limiter.wait("k", config)
    result = limiter.wait("k", config)
    assert result.allowed
    assert clock.sleeps == [3]


def test_run_and_batch_go_through_the_bucket():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=2, window_ms=1000)

    assert limiter.run("k", config, lambda a, b=0: a + b, 1, b=2) == 3

    seen = []
    out = limiter.batch(list(range(5)), 2, "k", config, lambda chunk: seen.append(chunk) or len(chunk))
    assert seen == [[0, 1], [2, 3], [4]]
    assert out == [2, 2, 1]
    # 1 run + 3 batches against a budget of 2 per second
    assert clock.sleeps


def test_concurrent_checks_never_exceed_budget():
    limiter = FixedWindowRateLimiter(MemoryBucketStore(), clock=lambda: 1_700_000_000.0)
    config = RateLimitConfig(max_requests=100, window_ms=60_000)
    allowed = []
    lock = threading.Lock()

    def worker():
        count = sum(1 for _ in range(50) if limiter.check("shared", config).allowed)
        with lock:
            allowed.append(count)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(allowed) == 100


def test_update_from_headers_with_relative_reset():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=100, window_ms=60_000)

    assert limiter.update_from_headers("k", limit=100, remaining=0, reset=30)
    blocked = limiter.check("k", config)
    assert not blocked.allowed
    assert blocked.retry_after == 30


def test_update_from_headers_with_epoch_reset():
    clock = FakeClock()
    limiter = _limiter(clock)
    assert limiter.update_from_headers("k", limit=10, remaining=7, reset=clock.now + 5)
    bucket = limiter.store.get("k")
    assert bucket["count"] == 3
    assert bucket["reset_at"] == pytest.approx(clock.now + 5)


def test_provider_limit_below_local_budget_blocks_when_exhausted():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=250, window_ms=1_000)

    assert limiter.update_from_headers("gmail", limit=100, remaining=0, reset=30)
    blocked = limiter.check("gmail", config)
    assert not blocked.allowed
    assert blocked.retry_after == 30

    clock.now += 30
    assert limiter.check("gmail", config).allowed


def test_provider_limit_caps_remaining_calls():
    clock = FakeClock()
    limiter = _limiter(clock)
    config = RateLimitConfig(max_requests=250, window_ms=60_000)

    limiter.update_from_headers("k", limit=100, remaining=2, reset=30)
    first = limiter.check("k", config)
    assert first.allowed and first.remaining == 1
    assert limiter.check("k", config).allowed
    assert not limiter.check("k", config).allowed


def test_update_from_headers_ignores_missing_or_stale_values():
    clock = FakeClock()
    limiter = _limiter(clock)
    assert not limiter.update_from_headers("k", limit=None, remaining=5, reset=10)
    assert not limiter.update_from_headers("k", limit=10, remaining=5, reset=clock.now - 10)
    assert limiter.store.get("k") is None


def test_chunk_list():
    assert rl.chunk_list(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert rl.chunk_list([], 3) == []


def test_unknown_provider_uses_default_tier():
    assert rl.config_for_provider("imap") == RateLimitConfig(max_requests=100, window_ms=60_000)
    assert rl.config_for_provider("Microsoft") == RateLimitConfig(max_requests=240, window_ms=60_000)


def test_bucket_key_per_account(monkeypatch):
    assert rl.bucket_key("Gmail", 7) == "gmail"
    monkeypatch.setattr(settings, "rate_limit_per_account", True)
    assert rl.bucket_key("gmail", 7) == "gmail:7"
    assert rl.bucket_key("gmail") == "gmail"


def test_redis_backend_falls_back_to_memory_when_unreachable(monkeypatch):
    import redis

    def _boom(*args, **kwargs):
        raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(settings, "rate_limit_backend", "redis")
    monkeypatch.setattr(redis, "from_url", _boom)
    assert isinstance(rl._build_store(), MemoryBucketStore)


def test_module_helpers_use_process_limiter(fake_rate_limiter):
    config = RateLimitConfig(max_requests=1, window_ms=1000)
    assert rl.check_rate_limit("helpers", config).allowed
    assert rl.get_rate_limiter() is fake_rate_limiter
    assert rl.with_rate_limit("other", config, lambda: "ok") == "ok"


def test_rate_limit_headers_are_case_insensitive():
    headers = RateLimitHeaders.from_mapping({"X-RateLimit-Limit": "100", "X-RATELIMIT-REMAINING": "7", "x-ratelimit-reset": "12.5"})
    assert headers == RateLimitHeaders(limit=100, remaining=7, reset=12.5)
    assert RateLimitHeaders.from_mapping({"RateLimit-Remaining": "3"}) == RateLimitHeaders(remaining=3)


def test_rate_limit_headers_missing_or_unparsable():
    assert RateLimitHeaders.from_mapping(None) is None
    assert RateLimitHeaders.from_mapping({"Content-Type": "application/json"}) is None
    assert RateLimitHeaders.from_mapping({"X-RateLimit-Limit": "lots"}) is None
    partial = RateLimitHeaders.from_mapping({"X-RateLimit-Limit": "50", "X-RateLimit-Remaining": "n/a"})
    assert partial == RateLimitHeaders(limit=50)


def test_parsed_headers_feed_the_bucket():
    clock = FakeClock()
    limiter = _limiter(clock)
    headers = RateLimitHeaders.from_mapping({"X-RateLimit-Limit": "10", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "5"})
    assert limiter.update_from_headers("k", headers.limit, headers.remaining, headers.reset)
    assert not limiter.check("k", RateLimitConfig(max_requests=50, window_ms=60_000)).allowed
