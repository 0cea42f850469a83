import json
import math
import threading
import time
from dataclasses import dataclass
from typing import Optional

from storage import KeyValueStore, MemoryStore

DEFAULT_LIMIT = 5
DEFAULT_WINDOW_SECONDS = 60.0
_STORE_PREFIX = "ratelimit."


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter:
    """Sliding-window admission control keyed by operation name.

    Windows are written through to the key-value store so they survive a
    restart; a missing or garbled record just starts an empty window.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store if store is not None else MemoryStore()
        self.limit = limit
        self.window_seconds = window_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _load(self, key: str) -> list[float]:
        raw = self.store.get(_STORE_PREFIX + key)
        if not raw:
            return []
        try:
            values = json.loads(raw)
        except json.JSONDecodeError:
            return []
        if not isinstance(values, list):
            return []
        return sorted(float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool))

    def _save(self, key: str, stamps: list[float]) -> None:
        if stamps:
            self.store.set(_STORE_PREFIX + key, json.dumps(stamps))
        else:
            self.store.remove(_STORE_PREFIX + key)

    def check_and_record(self, key: str, now: Optional[float] = None) -> RateDecision:
        current = time.time() if now is None else now
        with self._lock_for(key):
            cutoff = current - self.window_seconds
            stamps = [stamp for stamp in self._load(key) if stamp > cutoff]
            if len(stamps) >= self.limit:
                wait = math.ceil(stamps[0] + self.window_seconds - current)
                self._save(key, stamps)
                return RateDecision(allowed=False, retry_after_seconds=max(wait, 0))
            stamps.append(current)
            self._save(key, stamps)
            return RateDecision(allowed=True)

    def recorded(self, key: str, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        cutoff = current - self.window_seconds
        with self._lock_for(key):
            return sum(1 for stamp in self._load(key) if stamp > cutoff)

    def reset(self, key: Optional[str] = None) -> None:
        if key is not None:
            with self._lock_for(key):
                self._save(key, [])
            return
        known = [entry[len(_STORE_PREFIX) :] for entry in self.store.keys() if entry.startswith(_STORE_PREFIX)]
        for name in known:
            with self._lock_for(name):
                self._save(name, [])
