"""Circuit breaker guarding calls to the AI provider.

State lives in one process-wide instance and is only mutated between awaits,
so the asyncio scheduler is enough to keep it consistent. Multi-process
deployments need an external store for this state.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cardgen.errors import CircuitOpenError, ProviderTimeoutError
from cardgen.utils import get_logger, log_circuit_transition

LOG = get_logger()

FAILURE_RATE_CUTOFF = 0.5
MAX_HISTORY = 100
MAX_RESPONSE_TIMES = 100


def percentile(values: List[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = int(math.ceil(pct / 100.0 * len(ordered))) - 1
    return ordered[max(0, min(index, len(ordered) - 1))]


class CircuitBreakerState(str, Enum):
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


@dataclass
class CircuitBreakerConfig:
    threshold: int = 5
    timeout: int = 60000
    half_open_max_requests: int = 3
    window_size: int = 300000
    min_request_count: int = 10


class CircuitBreaker:

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._last_state_change = self._now()
        self._half_open_requests = 0
        self._response_times: List[float] = []
        self._history: List[Dict[str, Any]] = []

    def _now(self) -> float:
        return self._clock() * 1000.0

    def get_state(self) -> CircuitBreakerState:
        return self._state

    def can_execute(self) -> bool:
        if self._state == CircuitBreakerState.OPEN:
            if self._opened_at is not None and self._now() - self._opened_at >= self.config.timeout:
                self._change_state(CircuitBreakerState.HALF_OPEN, 'Timeout expired, testing recovery')
                self._half_open_requests = 0
            else:
                return False
        if self._state == CircuitBreakerState.HALF_OPEN:
            return self._half_open_requests < self.config.half_open_max_requests
        return True

    def on_success(self, response_time: Optional[float] = None):
        self._success_count += 1
        self._last_success_time = self._now()
        if response_time is not None:
            self._record_response_time(response_time)
        if self._state == CircuitBreakerState.HALF_OPEN:
            self._change_state(CircuitBreakerState.CLOSED, 'Successful request in half-open state')
            self._failure_count = 0
            self._half_open_requests = 0

    def on_failure(self, response_time: Optional[float] = None):
        self._failure_count += 1
        self._last_failure_time = self._now()
        if response_time is not None:
            self._record_response_time(response_time)

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._open('Probe request failed in half-open state')
            return

        if self._state == CircuitBreakerState.CLOSED:
            total = self._success_count + self._failure_count
            if total >= self.config.min_request_count and self._failure_count >= self.config.threshold:
                failure_rate = self._failure_count / total
                if failure_rate >= FAILURE_RATE_CUTOFF:
                    self._open(f'High failure rate: {failure_rate * 100:.1f}%')

    async def execute(self, operation: Callable[[], Awaitable[Any]], timeout_ms: Optional[int] = None) -> Any:
        if not self.can_execute():
            raise CircuitOpenError(f'Circuit breaker is {self._state.value.lower()}')

        probing = self._state == CircuitBreakerState.HALF_OPEN
        if probing:
            self._half_open_requests += 1

        start = self._now()
        try:
            if timeout_ms:
                try:
                    result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
                except asyncio.TimeoutError:
                    raise ProviderTimeoutError('Operation timed out')
            else:
                result = await operation()
        except asyncio.CancelledError:
            # an aborted call never ran to completion; give the probe slot back
            if probing and self._state == CircuitBreakerState.HALF_OPEN:
                self._half_open_requests = max(0, self._half_open_requests - 1)
            raise
        except Exception:
            self.on_failure(self._now() - start)
            raise
        self.on_success(self._now() - start)
        return result

    def get_metrics(self) -> Dict[str, Any]:
        total = self._success_count + self._failure_count
        avg = sum(self._response_times) / len(self._response_times) if self._response_times else 0.0
        return {
            'state': self._state.value,
            'total_requests': total,
            'successful_requests': self._success_count,
            'failed_requests': self._failure_count,
            'last_failure_time': self._last_failure_time,
            'last_success_time': self._last_success_time,
            'failure_rate': self._failure_count / total if total else 0.0,
            'average_response_time': avg,
            'p95_response_time': percentile(self._response_times, 95),
            'time_in_current_state': self._now() - self._last_state_change,
            'window_size': self.config.window_size,
            'state_change_history': list(self._history),
        }

    def reset(self):
        self._change_state(CircuitBreakerState.CLOSED, 'Manual reset')
        self._failure_count = 0
        self._success_count = 0
        self._half_open_requests = 0
        self._opened_at = None
        self._response_times = []

    def force_open(self, reason: str = 'Forced open'):
        self._open(reason)

    def is_healthy(self) -> bool:
        return self._state == CircuitBreakerState.CLOSED

    def get_time_until_next_attempt(self) -> float:
        if self._state != CircuitBreakerState.OPEN or self._opened_at is None:
            return 0
        return max(0.0, self.config.timeout - (self._now() - self._opened_at))

    def _open(self, reason: str):
        self._change_state(CircuitBreakerState.OPEN, reason)
        self._opened_at = self._now()
        self._half_open_requests = 0

    def _change_state(self, new_state: CircuitBreakerState, reason: str):
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        self._last_state_change = self._now()
        self._history.append({
            'from': old_state.value,
            'to': new_state.value,
            'timestamp': self._last_state_change,
            'reason': reason,
        })
        if len(self._history) > MAX_HISTORY:
            self._history.pop(0)
        log_circuit_transition(old_state.value, new_state.value, reason)

    def _record_response_time(self, response_time: float):
        self._response_times.append(response_time)
        if len(self._response_times) > MAX_RESPONSE_TIMES:
            self._response_times.pop(0)
