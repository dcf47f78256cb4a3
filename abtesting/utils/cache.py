"""Simple in-memory results cache with TTL - could swap to Redis later if needed"""
import threading
from typing import Optional, Any
from cachetools import TTLCache


class ResultsCache:
    """
    Memoizes computed results per (experiment, data version).

    One instance per ExperimentStore, so two stores never see each other's
    entries. The version bumps on every write to an experiment, which means
    a hit is never older than the data it was computed from.
    """

    def __init__(self, max_size: int, ttl: int):
        self._cache = TTLCache(maxsize=max_size, ttl=ttl)
        # TTLCache itself is not thread-safe
        self._lock = threading.Lock()

    @staticmethod
    def _key(test_id: str, version: int) -> str:
        return f"results:{test_id}:{version}"

    def get_results(self, test_id: str, version: int) -> Optional[Any]:
        """Get cached results if exists"""
        with self._lock:
            return self._cache.get(self._key(test_id, version))

    def set_results(self, test_id: str, version: int, value: Any):
        """Cache a results object"""
        with self._lock:
            self._cache[self._key(test_id, version)] = value

    def clear_experiment(self, test_id: str):
        """Drop every cached version of one experiment"""
        prefix = f"results:{test_id}:"
        with self._lock:
            for key in [k for k in list(self._cache.keys()) if k.startswith(prefix)]:
                self._cache.pop(key, None)

    def clear(self):
        with self._lock:
            self._cache.clear()
