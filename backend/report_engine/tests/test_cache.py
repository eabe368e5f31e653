from report_cache.cache import MemoryCache, SingleFlight, stable_hash


class Ticker:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_cache_set_get_roundtrip():
    cache = MemoryCache()
    cache.set("k1", {"v": 1}, 5)
    assert cache.get("k1") == {"v": 1}


def test_entries_expire():
    clock = Ticker()
    cache = MemoryCache(clock=clock)
    cache.set("k", "v", 60)
    clock.t += 59
    assert cache.get("k") == "v"
    clock.t += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_least_recently_used_is_evicted():
    cache = MemoryCache(max_entries=2)
    cache.set("a", 1, 60)
    cache.set("b", 2, 60)
    cache.get("a")
    cache.set("c", 3, 60)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_disabled_cache_stores_nothing():
    cache = MemoryCache(enabled=False)
    cache.set("a", 1, 60)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_zero_ttl_is_not_stored():
    cache = MemoryCache()
    cache.set("a", 1, 0)
    assert len(cache) == 0


def test_stable_hash_ignores_key_order():
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})
    assert stable_hash({"ds": "a"}) != stable_hash({"ds": "b"})


def test_single_flight_leader_and_waiters():
    flights = SingleFlight()
    first, leader = flights.join("k")
    second, follower_leads = flights.join("k")
    assert leader is True and follower_leads is False
    assert first is second
    assert flights.waiters("k") == 2

    flights.leave(second)
    assert flights.should_publish(first)
    flights.leave(first)
    assert not flights.should_publish(first)

    flights.finish(first)
    assert not flights.in_flight("k")
    assert flights.waiters("k") == 0
