import time
import json
import hashlib
import threading
from collections import OrderedDict
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple


class MemoryCache:
    """Thread-safe TTL cache with LRU eviction once `max_entries` is reached."""

    def __init__(self, max_entries: int = 512, enabled: bool = True, clock: Callable[[], float] = time.time):
        self.store: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self.lock = threading.Lock()
        self.max_entries = max_entries
        self.enabled = enabled
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        now = self.clock()
        with self.lock:
            val = self.store.get(key)
            if not val:
                return None
            exp, data = val
            if exp <= now:
                self.store.pop(key, None)
                return None
            self.store.move_to_end(key)
            return data

    def set(self, key: str, value: Any, ttl: float):
        if not self.enabled or ttl <= 0:
            return
        exp = self.clock() + ttl
        with self.lock:
            self.store[key] = (exp, value)
            self.store.move_to_end(key)
            while len(self.store) > self.max_entries:
                self.store.popitem(last=False)

    def invalidate(self, key: str):
        with self.lock:
            self.store.pop(key, None)

    def clear(self):
        with self.lock:
            self.store.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self.store)


def stable_hash(obj: Any) -> str:
    txt = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(txt.encode("utf-8")).hexdigest()


class Flight:
    """One in-flight computation shared by every caller asking for the same key."""

    def __init__(self, key: str):
        self.key = key
        self.future: Future = Future()
        self.waiters = 0
        self.abandoned = False


class SingleFlight:
    """
    Collapses concurrent requests for the same key into one computation.

    The first caller to `join` a key becomes the leader and is responsible for
    running the work and resolving `flight.future`; later callers just wait on
    the same future. A caller that stops waiting calls `leave`; once nobody is
    waiting the flight is marked abandoned so its result is not published.
    """

    def __init__(self):
        self._flights: Dict[str, Flight] = {}
        self._lock = threading.Lock()

    def join(self, key: str) -> Tuple[Flight, bool]:
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = Flight(key)
                self._flights[key] = flight
            flight.waiters += 1
            flight.abandoned = False
            return flight, leader

    def leave(self, flight: Flight):
        with self._lock:
            flight.waiters -= 1
            if flight.waiters <= 0 and not flight.future.done():
                flight.abandoned = True

    def should_publish(self, flight: Flight) -> bool:
        with self._lock:
            return not flight.abandoned

    def finish(self, flight: Flight):
        with self._lock:
            if self._flights.get(flight.key) is flight:
                del self._flights[flight.key]

    def waiters(self, key: str) -> int:
        with self._lock:
            flight = self._flights.get(key)
            return flight.waiters if flight else 0

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._flights
