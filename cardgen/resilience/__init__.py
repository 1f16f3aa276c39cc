"""Resilience primitives: circuit breaker, retries, response cache, rate limiting"""

from .circuit_breaker import (
	CircuitBreaker,
	CircuitBreakerConfig,
	CircuitBreakerState,
)
from .cache_manager import (
	CacheEntry,
	InMemoryResponseCache,
	RedisResponseCache,
	make_response_cache,
)
from .retry_manager import (
	RetryManager,
	RetryResult,
	RetryStrategy,
	DEFAULT_STRATEGIES,
	classify_error,
	is_retryable_error,
)
from .rate_limiter import (
	RateLimiter,
	RateLimitResult,
	RedisRateLimiter,
	make_rate_limiter,
)

__all__ = [
	'CircuitBreaker',
	'CircuitBreakerConfig',
	'CircuitBreakerState',
	'CacheEntry',
	'InMemoryResponseCache',
	'RedisResponseCache',
	'make_response_cache',
	'RetryManager',
	'RetryResult',
	'RetryStrategy',
	'DEFAULT_STRATEGIES',
	'classify_error',
	'is_retryable_error',
	'RateLimiter',
	'RateLimitResult',
	'RedisRateLimiter',
	'make_rate_limiter',
]
