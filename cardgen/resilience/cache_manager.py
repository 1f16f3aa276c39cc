import os
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cardgen.utils import get_logger

LOG = get_logger()

CACHE_SWEEP_THRESHOLD = 1000
REDIS_CACHE_ENABLED = os.getenv('REDIS_CACHE_ENABLED', 'false').lower() in ('1', 'true', 'yes')
REDIS_CACHE_PREFIX = os.getenv('REDIS_CACHE_PREFIX', 'cardgen:cache:')


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class InMemoryResponseCache:
    """Process-local TTL cache. Expiry is checked lazily on read; a full
    sweep runs whenever the cache grows past ``CACHE_SWEEP_THRESHOLD``."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def _now(self) -> float:
        return self._clock() * 1000.0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expired(self._now()):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl: float):
        self._entries[key] = CacheEntry(data=value, timestamp=self._now(), ttl=ttl)
        if len(self._entries) > CACHE_SWEEP_THRESHOLD:
            self.sweep()

    def sweep(self) -> int:
        now = self._now()
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            LOG.info('cache_sweep', extra={'evicted': len(expired), 'size': len(self._entries)})
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0


class RedisResponseCache:
    """Shared cache on Redis so several workers see the same entries.

    Falls back to a disabled cache (every read is a miss) when Redis cannot
    be reached.
    """

    def __init__(self, client=None, prefix: str = REDIS_CACHE_PREFIX):
        self.prefix = prefix
        self.hits = 0
        self.misses = 0
        self.enabled = True
        self._client = client
        if self._client is not None:
            return
        import redis
        try:
            url = os.getenv('REDIS_URL')
            if url:
                self._client = redis.from_url(url, decode_responses=True)
            else:
                self._client = redis.Redis(host=os.getenv('REDIS_HOST', 'redis'), port=int(os.getenv('REDIS_PORT', '6379')), password=os.getenv('REDIS_PASSWORD') or None, decode_responses=True)
            self._client.ping()
            LOG.info('redis_cache_connected', extra={'prefix': prefix})
        except Exception as e:
            LOG.warning('redis_cache_unavailable', extra={'error': str(e)})
            self.enabled = False
            self._client = None

    def _key(self, key: str) -> str:
        return f'{self.prefix}{key}'

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled or not self._client:
            self.misses += 1
            return None
        try:
            val = self._client.get(self._key(key))
        except Exception as e:
            LOG.warning('cache_get_failed', extra={'error': str(e)})
            self.misses += 1
            return None
        if val is None:
            self.misses += 1
            return None
        self.hits += 1
        return json.loads(val)

    def set(self, key: str, value: Any, ttl: float):
        if not self.enabled or not self._client:
            return
        seconds = max(1, int(math.ceil(ttl / 1000.0)))
        try:
            self._client.setex(self._key(key), seconds, json.dumps(value))
        except Exception as e:
            LOG.warning('cache_set_failed', extra={'error': str(e)})

    def size(self) -> int:
        if not self.enabled or not self._client:
            return 0
        try:
            return sum(1 for _ in self._client.scan_iter(match=f'{self.prefix}*'))
        except Exception as e:
            LOG.warning('cache_size_failed', extra={'error': str(e)})
            return 0

    def clear(self):
        self.hits = 0
        self.misses = 0
        if not self.enabled or not self._client:
            return
        try:
            for k in list(self._client.scan_iter(match=f'{self.prefix}*')):
                self._client.delete(k)
        except Exception as e:
            LOG.warning('cache_clear_failed', extra={'error': str(e)})


def make_response_cache():
    if REDIS_CACHE_ENABLED:
        cache = RedisResponseCache()
        if cache.enabled:
            return cache
    return InMemoryResponseCache()
