"""Keyed attempt counters with expiry, injected where rate limits apply."""

import threading
import time
from abc import ABC, abstractmethod
from functools import lru_cache

import redis

from homeservice.config import settings
from homeservice.errors import RateLimited


class AttemptStore(ABC):
    @abstractmethod
    def hit(self, key: str, window_seconds: int) -> int:
        """Count one attempt for key and return the count inside the window."""

    @abstractmethod
    def reset(self, key: str) -> None: ...


class MemoryAttemptStore(AttemptStore):
    def __init__(self, max_keys: int = 10000, clock=time.monotonic):
        self.max_keys = max_keys
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[int, float]] = {}

    def _evict(self, now: float) -> None:
        expired = [k for k, (_, expires) in self._entries.items() if expires <= now]
        for k in expired:
            del self._entries[k]
        while len(self._entries) >= self.max_keys:
            oldest = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[oldest]

    def hit(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            count, expires = self._entries.get(key, (0, 0.0))
            if expires <= now:
                self._evict(now)
                count, expires = 0, now + window_seconds
            count += 1
            self._entries[key] = (count, expires)
            return count

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


class RedisAttemptStore(AttemptStore):
    def __init__(self, client: redis.Redis, prefix: str = "attempts:"):
        self.client = client
        self.prefix = prefix

    def hit(self, key: str, window_seconds: int) -> int:
        name = self.prefix + key
        pipe = self.client.pipeline()
        pipe.incr(name)
        pipe.expire(name, window_seconds, nx=True)
        count, _ = pipe.execute()
        return int(count)

    def reset(self, key: str) -> None:
        self.client.delete(self.prefix + key)


class RateLimiter:
    def __init__(self, store: AttemptStore, limit: int, window_seconds: int, scope: str):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.scope = scope

    def check(self, key: str) -> None:
        count = self.store.hit(f"{self.scope}:{key}", self.window_seconds)
        if count > self.limit:
            raise RateLimited(f"too many {self.scope} attempts, try again later")


@lru_cache()
def get_attempt_store() -> AttemptStore:
    if settings.ATTEMPT_STORE.lower() == "redis":
        return RedisAttemptStore(redis.Redis.from_url(settings.REDIS_URL))
    return MemoryAttemptStore()
