"""Named retry strategies with backoff, jitter, backpressure and caching.

The retry loop is tenacity's ``AsyncRetrying``; this module supplies the
strategy table, the wait policy, the error classification and a small
response cache in front of the loop.
"""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from cardgen.errors import ErrorKind
from cardgen.resilience.cache_manager import InMemoryResponseCache
from cardgen.utils import get_logger

LOG = get_logger()

MAX_HISTORY_SIZE = 1000
BACKPRESSURE_WINDOW_MS = 10000
BACKPRESSURE_FAILURES = 5
RECENT_FAILURE_WINDOW_MS = 60000
DEFAULT_CACHE_TTL_MS = 300000

_TRANSIENT = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.MODEL_ERROR, ErrorKind.NETWORK})


@dataclass(frozen=True)
class RetryStrategy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_multiplier: float
    jitter_factor: float
    retryable_errors: FrozenSet[ErrorKind] = field(default_factory=frozenset)


DEFAULT_STRATEGIES: Dict[str, RetryStrategy] = {
    'default': RetryStrategy(3, 1000, 10000, 2, 0.2, _TRANSIENT),
    'aggressive': RetryStrategy(5, 2000, 30000, 3, 0.3, _TRANSIENT),
    'conservative': RetryStrategy(2, 500, 5000, 1.5, 0.1, frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT})),
    'quick': RetryStrategy(1, 0, 0, 1, 0, frozenset()),
}


@dataclass
class RetryResult:
    data: Any
    attempts: int
    total_time: float


@dataclass
class RetryAttempt:
    attempt: int
    error: BaseException
    timestamp: float


def classify_error(error: BaseException) -> Optional[ErrorKind]:
    """Kind tag first; message patterns only for untagged errors."""
    kind = getattr(error, 'kind', None)
    if kind is not None:
        try:
            return ErrorKind(kind)
        except ValueError:
            return ErrorKind.UNKNOWN
    msg = str(error).lower()
    if 'rate limit' in msg or '429' in msg:
        return ErrorKind.RATE_LIMIT
    if 'timeout' in msg or 'timed out' in msg:
        return ErrorKind.TIMEOUT
    if '500' in msg or '502' in msg or '503' in msg:
        return ErrorKind.MODEL_ERROR
    if 'network' in msg or 'connection' in msg:
        return ErrorKind.NETWORK
    return None


def is_retryable_error(error: BaseException, retryable_errors: FrozenSet[ErrorKind]) -> bool:
    kind = classify_error(error)
    return kind is not None and kind in retryable_errors


class _BackoffWait(wait_base):
    def __init__(self, manager: 'RetryManager', strategy: RetryStrategy):
        self.manager = manager
        self.strategy = strategy

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.manager.calculate_delay(retry_state.attempt_number, self.strategy)
        if self.manager.should_apply_backpressure():
            delay *= 2
            LOG.warning('retry_backpressure', extra={'delay_ms': delay})
        return delay / 1000.0


class RetryManager:

    def __init__(self, cache=None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep, clock: Callable[[], float] = time.monotonic):
        self._strategies: Dict[str, RetryStrategy] = dict(DEFAULT_STRATEGIES)
        self._cache = cache if cache is not None else InMemoryResponseCache(clock=clock)
        self._sleep = sleep
        self._clock = clock
        self._history: List[RetryAttempt] = []
        self._total_attempts = 0
        self._operations = 0

    def _now(self) -> float:
        return self._clock() * 1000.0

    def add_strategy(self, name: str, strategy: RetryStrategy):
        self._strategies[name] = strategy

    def get_strategy(self, name: str) -> RetryStrategy:
        return self._strategies.get(name) or self._strategies['default']

    async def execute_with_retry(self, operation: Callable[[], Awaitable[Any]], strategy_name: str = 'default', cache_key: Optional[str] = None, cache_ttl: float = DEFAULT_CACHE_TTL_MS) -> RetryResult:
        strategy = self.get_strategy(strategy_name)
        start = self._now()

        if cache_key:
            cached = self._cache.get(cache_key)
            if cached is not None:
                LOG.info('retry_cache_hit', extra={'cache_key': cache_key})
                return RetryResult(data=cached, attempts=1, total_time=self._now() - start)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, strategy.max_attempts)),
            wait=_BackoffWait(self, strategy),
            retry=retry_if_exception(lambda e: is_retryable_error(e, strategy.retryable_errors)),
            sleep=self._sleep,
            reraise=True,
        )

        attempts = 0
        result = None
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                # counted on completion only; a cancelled attempt leaves no trace
                try:
                    result = await operation()
                except Exception as e:
                    self._count_attempt(attempts)
                    self._record_failure(attempts, e)
                    LOG.info('retry_attempt_failed', extra={'attempt': attempts, 'max_attempts': strategy.max_attempts, 'error': str(e), 'strategy': strategy_name})
                    raise
                self._count_attempt(attempts)

        if cache_key:
            self._cache.set(cache_key, result, cache_ttl)
        return RetryResult(data=result, attempts=attempts, total_time=self._now() - start)

    def calculate_delay(self, attempt: int, strategy: RetryStrategy) -> float:
        capped = min(strategy.base_delay * (strategy.backoff_multiplier ** (attempt - 1)), strategy.max_delay)
        jitter = capped * strategy.jitter_factor * random.uniform(-1, 1)
        return float(max(0, int(capped + jitter)))

    def should_apply_backpressure(self) -> bool:
        return self._count_failures_since(self._now() - BACKPRESSURE_WINDOW_MS) > BACKPRESSURE_FAILURES

    def get_stats(self) -> Dict[str, Any]:
        failed = len(self._history)
        return {
            'total_attempts': self._total_attempts,
            'successful_attempts': self._total_attempts - failed,
            'failed_attempts': failed,
            'average_attempts_per_operation': self._total_attempts / self._operations if self._operations else 0.0,
            'recent_failures': self._count_failures_since(self._now() - RECENT_FAILURE_WINDOW_MS),
        }

    def get_cache_stats(self) -> Dict[str, Any]:
        hits = self._cache.hits
        misses = self._cache.misses
        total = hits + misses
        return {
            'size': self._cache.size(),
            'hit_rate': hits / total if total else 0.0,
            'total_hits': hits,
            'total_misses': misses,
        }

    def clear_cache(self):
        self._cache.clear()

    def clear_history(self):
        self._history.clear()
        self._total_attempts = 0
        self._operations = 0

    def _count_attempt(self, attempt: int):
        self._total_attempts += 1
        if attempt == 1:
            self._operations += 1

    def _count_failures_since(self, since: float) -> int:
        return sum(1 for a in self._history if a.timestamp >= since)

    def _record_failure(self, attempt: int, error: BaseException):
        self._history.append(RetryAttempt(attempt=attempt, error=error, timestamp=self._now()))
        if len(self._history) > MAX_HISTORY_SIZE:
            self._history.pop(0)
