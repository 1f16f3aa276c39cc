import os
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from cardgen.utils import get_logger

LOG = get_logger()

RATE_LIMIT_MAX_REQUESTS = int(os.getenv('RATE_LIMIT_MAX_REQUESTS', '10'))
RATE_LIMIT_WINDOW_MS = int(os.getenv('RATE_LIMIT_WINDOW_MS', '60000'))
KEY_PREFIX = 'ai_generation:'


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: Optional[float] = None
    retry_after: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_time: float


class RateLimiter:
    """Fixed-window request counter per user, kept in process memory."""

    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS, window_ms: int = RATE_LIMIT_WINDOW_MS, clock: Callable[[], float] = time.monotonic, wall_clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._wall_clock = wall_clock
        self._windows: Dict[str, _Window] = {}

    def _now(self) -> float:
        return self._clock() * 1000.0

    def _epoch_ms(self, reset_time: float, now: float) -> float:
        # windows run on the monotonic clock; callers get epoch ms like the Redis variant
        return self._wall_clock() * 1000.0 + max(0.0, reset_time - now)

    def _key(self, user_id: str) -> str:
        return f'{KEY_PREFIX}{user_id}'

    def is_allowed(self, user_id: str) -> RateLimitResult:
        now = self._now()
        key = self._key(user_id)
        self._cleanup(now)

        window = self._windows.get(key)
        if window is None:
            # expired windows were dropped by _cleanup, so this also covers a reset
            self._windows[key] = _Window(count=1, reset_time=now + self.window_ms)
            return RateLimitResult(allowed=True, remaining=self.max_requests - 1)

        if window.count >= self.max_requests:
            retry_after = max(1, int(math.ceil((window.reset_time - now) / 1000.0)))
            return RateLimitResult(allowed=False, remaining=0, reset_time=self._epoch_ms(window.reset_time, now), retry_after=retry_after)

        window.count += 1
        return RateLimitResult(allowed=True, remaining=self.max_requests - window.count)

    def get_status(self, user_id: str) -> Optional[Dict[str, float]]:
        window = self._windows.get(self._key(user_id))
        if window is None:
            return None
        return {'count': window.count, 'reset_time': self._epoch_ms(window.reset_time, self._now())}

    def reset(self, user_id: str):
        self._windows.pop(self._key(user_id), None)

    def clear(self):
        self._windows.clear()

    def _cleanup(self, now: float):
        expired = [k for k, w in self._windows.items() if now >= w.reset_time]
        for k in expired:
            del self._windows[k]


class RedisRateLimiter(RateLimiter):
    """Same fixed window, counted in Redis so every worker shares it."""

    def __init__(self, client, max_requests: int = RATE_LIMIT_MAX_REQUESTS, window_ms: int = RATE_LIMIT_WINDOW_MS, wall_clock: Callable[[], float] = time.time):
        super().__init__(max_requests=max_requests, window_ms=window_ms, wall_clock=wall_clock)
        self._client = client

    def is_allowed(self, user_id: str) -> RateLimitResult:
        key = self._key(user_id)
        count = int(self._client.incr(key))
        if count == 1:
            self._client.pexpire(key, self.window_ms)
        ttl_ms = self._client.pttl(key)
        if ttl_ms is None or ttl_ms < 0:
            # key lost its expiry (e.g. INCR raced a manual DEL); restart the window
            self._client.pexpire(key, self.window_ms)
            ttl_ms = self.window_ms
        reset_time = self._wall_clock() * 1000.0 + ttl_ms
        if count > self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time, retry_after=max(1, int(math.ceil(ttl_ms / 1000.0))))
        return RateLimitResult(allowed=True, remaining=self.max_requests - count)

    def get_status(self, user_id: str) -> Optional[Dict[str, float]]:
        key = self._key(user_id)
        raw = self._client.get(key)
        if raw is None:
            return None
        ttl_ms = self._client.pttl(key)
        return {'count': int(raw), 'reset_time': self._wall_clock() * 1000.0 + max(0, ttl_ms or 0)}

    def reset(self, user_id: str):
        self._client.delete(self._key(user_id))

    def clear(self):
        for k in list(self._client.scan_iter(match=f'{KEY_PREFIX}*')):
            self._client.delete(k)


def make_rate_limiter() -> RateLimiter:
    url = os.getenv('REDIS_URL')
    if url:
        try:
            import redis
            client = redis.from_url(url, decode_responses=True)
            client.ping()
            LOG.info('rate_limiter_using_redis')
            return RedisRateLimiter(client)
        except Exception as e:
            LOG.warning('Redis not available for rate limiter, using in-memory windows', extra={'error': str(e)})
    return RateLimiter()
