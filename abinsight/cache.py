import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


INTERPRETATION_TTL_SECONDS = 60 * 60


def interpretation_fingerprint(results: dict) -> Tuple[Any, ...]:
    """
    The inputs that determine an interpretation: best variant id, control and
    best-variant counts, confidence and uplift.
    """
    control = results.get("control") or {}
    variant = results.get("variant") or {}
    return (
        variant.get("id"),
        control.get("visitor_count"),
        control.get("conversion_count"),
        variant.get("visitor_count"),
        variant.get("conversion_count"),
        results.get("confidence"),
        results.get("uplift_pct"),
    )


class InterpretationCache:
    """
    Time-boxed memoization keyed by (test id, fingerprint).

    Within the TTL the same key returns the very object that was stored.
    Expired entries are dropped on read. Once `max_entries` is reached the
    oldest entry is evicted. All reads and writes hold one lock, so
    check-then-set is atomic; two callers missing the same key at once may
    both compute, and the first stored value is kept and returned to both.
    """

    def __init__(
        self,
        ttl_seconds: float = INTERPRETATION_TTL_SECONDS,
        max_entries: Optional[int] = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple[Hashable, Hashable], Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _key(self, test_id: Hashable, fingerprint: Hashable) -> Tuple[Hashable, Hashable]:
        return (test_id, fingerprint)

    def _get_locked(self, key):
        item = self._entries.get(key)
        if item is None:
            return None
        stored_at, value = item
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def _set_locked(self, key, value) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry for test %s", evicted[0])

    def get(self, test_id: Hashable, fingerprint: Hashable) -> Optional[Any]:
        with self._lock:
            return self._get_locked(self._key(test_id, fingerprint))

    def set(self, test_id: Hashable, fingerprint: Hashable, value: Any) -> None:
        with self._lock:
            self._set_locked(self._key(test_id, fingerprint), value)

    def get_or_compute(self, test_id: Hashable, fingerprint: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Cached value for the key, or compute(), store and return it.
        compute() runs outside the lock.
        """
        key = self._key(test_id, fingerprint)
        with self._lock:
            cached = self._get_locked(key)
        if cached is not None:
            return cached

        value = compute()
        with self._lock:
            # another caller may have stored the same key meanwhile; keep theirs
            existing = self._get_locked(key)
            if existing is not None:
                return existing
            self._set_locked(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
