import logging
import threading
import time
from typing import Callable, List

import pytest

from renewed.cache import BoundedTTLCache, CacheSweeper


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Handle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Collects scheduled removals so tests decide when they fire."""

    def __init__(self) -> None:
        self.handles: List[_Handle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle(delay, callback)
        self.handles.append(handle)
        return handle

    def fire_pending(self) -> None:
        for handle in list(self.handles):
            if not handle.cancelled:
                handle.callback()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


def make_cache(clock: FakeClock, scheduler: ManualScheduler, **kwargs) -> BoundedTTLCache:
    return BoundedTTLCache(clock=clock, scheduler=scheduler, **kwargs)


def test_set_then_get_returns_value(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    cache.set("k", {"title": "Prologue"})
    assert cache.get("k") == {"title": "Prologue"}
    assert cache.get_stats().hits == 1


def test_expired_entry_is_a_miss_and_removed(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, default_ttl=10.0)
    cache.set("k", "v")

    clock.now = 9.99
    assert cache.get("k") == "v"

    clock.now = 10.0
    assert cache.get("k") is None
    assert cache.size() == 0
    stats = cache.get_stats()
    assert stats.hits == 1
    assert stats.misses == 1


def test_capacity_evicts_earliest_inserted(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=2, default_ttl=1.0)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3
    assert cache.get_stats().evictions == 1
    assert len(cache) == 2


def test_one_eviction_per_overflowing_set(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=3)
    for index in range(10):
        cache.set(f"k{index}", index)

    assert cache.size() == 3
    assert cache.get_stats().evictions == 7
    assert cache.keys() == ["k7", "k8", "k9"]


def test_reads_do_not_change_eviction_order(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1

    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2


def test_reset_key_is_not_evicted_first(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)
    cache.set("c", 3)

    assert cache.get("a") == 10
    assert cache.get("b") is None
    assert cache.get("c") == 3


def test_reset_updates_value_and_ttl_without_growing(
    clock: FakeClock, scheduler: ManualScheduler
) -> None:
    cache = make_cache(clock, scheduler, max_size=2, default_ttl=10.0)
    cache.set("a", "old")
    cache.set("b", "other")

    clock.now = 8.0
    cache.set("a", "new")
    assert cache.size() == 2
    assert cache.get_stats().evictions == 0

    clock.now = 12.0
    assert cache.get("a") == "new"
    assert cache.get("b") is None


def test_explicit_ttl_overrides_default(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, default_ttl=300.0)
    cache.set("short", "v", ttl=0.05)

    clock.now = 0.06
    misses_before = cache.get_stats().misses
    assert cache.get("short") is None
    assert cache.get_stats().misses == misses_before + 1


def test_hit_rate_formatting(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    assert cache.get_stats().hit_rate == "0%"

    cache.set("k", "v")
    cache.get("k")
    cache.get("missing")
    cache.get("missing")

    stats = cache.get_stats()
    assert stats.hit_rate == "33.33%"
    assert stats.as_dict() == {
        "hits": 1,
        "misses": 2,
        "sets": 1,
        "evictions": 0,
        "hit_rate": "33.33%",
        "size": 1,
    }


def test_delete_absent_key_changes_nothing(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    cache.set("k", "v")
    before = cache.get_stats()

    assert cache.delete("missing") is False
    assert cache.get_stats() == before


def test_delete_cancels_pending_expiration(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    cache.set("k", "v")

    assert cache.delete("k") is True
    assert scheduler.handles[0].cancelled
    assert cache.get("k") is None


def test_clear_keeps_counters(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=1)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("b")
    cache.get("a")
    before = cache.get_stats()

    cache.clear()

    after = cache.get_stats()
    assert after.size == 0
    assert (after.hits, after.misses, after.sets, after.evictions) == (
        before.hits,
        before.misses,
        before.sets,
        before.evictions,
    )
    assert all(handle.cancelled for handle in scheduler.handles)


def test_cleanup_removes_only_expired(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, default_ttl=10.0)
    cache.set("a", 1, ttl=5.0)
    cache.set("b", 2, ttl=5.0)
    cache.set("c", 3)

    clock.now = 6.0
    assert cache.cleanup() == 2
    assert cache.size() == 1
    assert cache.cleanup() == 0


def test_scheduled_expiration_removes_entry(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    cache.set("k", "v", ttl=2.0)
    assert scheduler.handles[0].delay == 2.0

    scheduler.fire_pending()

    assert cache.size() == 0
    # The sweep afterwards is a no-op for the same key.
    assert cache.cleanup() == 0


def test_reset_cancels_previous_expiration(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    cache.set("k", "first")
    first = scheduler.handles[0]

    cache.set("k", "second")

    assert first.cancelled
    # A stale callback that was already running must not drop the new value.
    first.callback()
    assert cache.get("k") == "second"


def test_has_and_keys_do_not_touch_counters(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, default_ttl=10.0)
    cache.set("live", 1)
    cache.set("stale", 2, ttl=1.0)
    clock.now = 2.0

    assert cache.has("live")
    assert not cache.has("missing")
    assert cache.keys() == ["live"]
    assert not cache.has("stale")
    stats = cache.get_stats()
    assert (stats.hits, stats.misses) == (0, 0)
    assert stats.size == 1


def test_get_or_set_calls_factory_once(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    calls = []

    def factory() -> str:
        calls.append(1)
        return "computed"

    assert cache.get_or_set("k", factory) == "computed"
    assert cache.get_or_set("k", factory) == "computed"
    assert len(calls) == 1


def test_usage_percentage(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler, max_size=3)
    cache.set("a", 1)
    assert cache.usage_percentage() == 33
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.usage_percentage() == 100


@pytest.mark.parametrize("kwargs", [{"max_size": 0}, {"default_ttl": -1}])
def test_invalid_construction(kwargs) -> None:
    with pytest.raises(ValueError):
        BoundedTTLCache(**kwargs)


def test_real_timer_expires_entry() -> None:
    cache = BoundedTTLCache(max_size=5, default_ttl=60.0)
    cache.set("x", "v", ttl=0.05)
    time.sleep(0.06)

    misses_before = cache.get_stats().misses
    assert cache.get("x") is None
    assert cache.get_stats().misses == misses_before + 1
    assert cache.size() == 0


def test_sweeper_logs_removed_entries(
    clock: FakeClock, scheduler: ManualScheduler, caplog: pytest.LogCaptureFixture
) -> None:
    cache = make_cache(clock, scheduler, default_ttl=1.0)
    cache.set("a", 1)
    cache.set("b", 2)
    sweeper = CacheSweeper(cache, interval_sec=300)

    assert sweeper.sweep() == 0
    clock.now = 5.0
    with caplog.at_level(logging.INFO, logger="renewed.cache"):
        assert sweeper.sweep() == 2
    assert "removed 2 expired entries" in caplog.text


def test_get_or_set_keeps_cached_none(clock: FakeClock, scheduler: ManualScheduler) -> None:
    cache = make_cache(clock, scheduler)
    calls = []

    def factory() -> None:
        calls.append(1)
        return None

    assert cache.get_or_set("empty", factory) is None
    assert cache.get_or_set("empty", factory) is None
    assert len(calls) == 1
    stats = cache.get_stats()
    assert (stats.hits, stats.misses) == (1, 1)


def test_concurrent_access_with_real_timers() -> None:
    cache = BoundedTTLCache(max_size=20, default_ttl=0.05)
    workers, rounds = 4, 100
    errors: List[BaseException] = []

    def worker(offset: int) -> None:
        try:
            for index in range(rounds):
                key = f"k{(offset * rounds + index) % 50}"
                cache.set(key, index)
                cache.get(key)
                cache.get(f"k{index % 50}")
                if index % 10 == 0:
                    cache.cleanup()
                assert cache.size() <= 20
        except BaseException as exc:  # surfaced in the main thread below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    stats = cache.get_stats()
    assert stats.sets == workers * rounds
    assert stats.hits + stats.misses == workers * rounds * 2
    assert stats.size <= 20
    assert stats.evictions <= stats.sets
