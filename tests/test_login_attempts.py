"""Tests for the per-source login attempt tracker."""

import threading
from datetime import timedelta

import pytest

from crmauth.service.login_attempts import LoginAttemptTracker


class _UnavailableCache:
    async def get_login_failures(self, source):
        raise ConnectionError("redis down")

    async def record_login_failure(self, source, window_seconds):
        raise ConnectionError("redis down")

    async def clear_login_failures(self, source):
        raise ConnectionError("redis down")


class _CountingCache:
    """Stands in for RedisCache's attempt counter operations."""

    def __init__(self):
        self.counts = {}
        self.windows = {}

    async def get_login_failures(self, source):
        return self.counts.get(source, 0)

    async def record_login_failure(self, source, window_seconds):
        self.counts[source] = self.counts.get(source, 0) + 1
        self.windows[source] = window_seconds
        return self.counts[source]

    async def clear_login_failures(self, source):
        self.counts.pop(source, None)


@pytest.fixture
def tracker(clock):
    return LoginAttemptTracker(max_attempts=5, window=timedelta(minutes=15), clock=clock)


class TestInMemoryTracker:
    async def test_blocks_at_threshold(self, tracker):
        for _ in range(4):
            await tracker.record_failure("10.0.0.1")
        assert not await tracker.is_blocked("10.0.0.1")

        await tracker.record_failure("10.0.0.1")

        assert await tracker.is_blocked("10.0.0.1")
        assert tracker.failures("10.0.0.1") == 5

    async def test_sources_are_independent(self, tracker):
        for _ in range(5):
            await tracker.record_failure("10.0.0.1")

        assert await tracker.is_blocked("10.0.0.1")
        assert not await tracker.is_blocked("10.0.0.2")

    async def test_success_resets_counter(self, tracker):
        for _ in range(5):
            await tracker.record_failure("10.0.0.1")

        await tracker.record_success("10.0.0.1")

        assert tracker.failures("10.0.0.1") == 0
        assert not await tracker.is_blocked("10.0.0.1")

    async def test_block_lifts_when_window_elapses(self, tracker, clock):
        for _ in range(5):
            await tracker.record_failure("10.0.0.1")

        clock.advance(minutes=14, seconds=59)
        assert await tracker.is_blocked("10.0.0.1")

        clock.advance(seconds=1)
        assert not await tracker.is_blocked("10.0.0.1")
        assert tracker.failures("10.0.0.1") == 0

    async def test_window_is_fixed_from_first_failure(self, tracker, clock):
        await tracker.record_failure("10.0.0.1")
        clock.advance(minutes=10)
        for _ in range(3):
            await tracker.record_failure("10.0.0.1")
        clock.advance(minutes=6)

        # The window opened by the first failure has closed
        await tracker.record_failure("10.0.0.1")

        assert tracker.failures("10.0.0.1") == 1

    async def test_cleanup_drops_elapsed_counters(self, tracker, clock):
        await tracker.record_failure("10.0.0.1")
        await tracker.record_failure("10.0.0.2")
        clock.advance(minutes=16)

        assert tracker.cleanup_expired() == 2
        assert tracker.cleanup_expired() == 0

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValueError):
            LoginAttemptTracker(max_attempts=0)

    def test_concurrent_failures_are_all_counted(self, clock):
        tracker = LoginAttemptTracker(max_attempts=1000, clock=clock)

        def worker():
            for _ in range(50):
                tracker._increment("10.0.0.9")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tracker.failures("10.0.0.9") == 400


class TestSharedCache:
    async def test_counts_go_through_cache(self):
        cache = _CountingCache()
        tracker = LoginAttemptTracker(cache, max_attempts=3, window=timedelta(minutes=15))

        for _ in range(3):
            await tracker.record_failure("10.0.0.1")

        assert await tracker.is_blocked("10.0.0.1")
        assert cache.windows["10.0.0.1"] == 900

        await tracker.record_success("10.0.0.1")
        assert not await tracker.is_blocked("10.0.0.1")

    async def test_unavailable_cache_fails_open_by_default(self):
        tracker = LoginAttemptTracker(_UnavailableCache(), max_attempts=3)

        assert not await tracker.is_blocked("10.0.0.1")
        # Recording never raises into the login path
        await tracker.record_failure("10.0.0.1")
        await tracker.record_success("10.0.0.1")

    async def test_unavailable_cache_fails_closed_when_configured(self):
        tracker = LoginAttemptTracker(_UnavailableCache(), max_attempts=3, fail_open=False)

        assert await tracker.is_blocked("10.0.0.1")
