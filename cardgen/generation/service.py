"""Topic-based flashcard generation against the AI provider.

Every provider call goes through the retry manager, and every attempt is
wrapped by the circuit breaker. Successful, validated batches are cached by
request fingerprint.
"""
from __future__ import annotations

import os
import json
import time
from typing import Any, Dict, Optional

from cardgen.errors import AuthenticationError, CircuitOpenError, InvalidRequestError, ProviderError, as_provider_error
from cardgen.generation.prompts import build_messages, CONTEXT_MAX_LENGTH, TOPIC_MAX_LENGTH
from cardgen.generation.provider import OpenRouterProvider, OPENROUTER_TIMEOUT_MS
from cardgen.generation.response_parser import parse_structured_response
from cardgen.generation.schema import (
    FlashcardBatch,
    FlashcardGenerationRequest,
    GenerationMetadata,
    GenerationResult,
    MAX_FLASHCARDS,
    MIN_FLASHCARDS,
)
from cardgen.resilience import CircuitBreaker, CircuitBreakerConfig, RetryManager, make_response_cache
from cardgen.utils import get_logger

LOG = get_logger()

AVAILABLE_MODELS = ('openai/gpt-4o-mini',)
OPENROUTER_DEFAULT_MODEL = os.getenv('OPENROUTER_DEFAULT_MODEL', 'openai/gpt-4o-mini')
OPENROUTER_TEMPERATURE = float(os.getenv('OPENROUTER_TEMPERATURE', '0.7'))
OPENROUTER_MAX_TOKENS = int(os.getenv('OPENROUTER_MAX_TOKENS', '2000'))
OPENROUTER_TOP_P = float(os.getenv('OPENROUTER_TOP_P', '0.9'))
RETRY_STRATEGY = os.getenv('RETRY_STRATEGY', 'default')
RESPONSE_CACHE_TTL_MS = int(os.getenv('RESPONSE_CACHE_TTL_MS', '300000'))
CIRCUIT_BREAKER_THRESHOLD = int(os.getenv('CIRCUIT_BREAKER_THRESHOLD', '5'))
CIRCUIT_BREAKER_TIMEOUT_MS = int(os.getenv('CIRCUIT_BREAKER_TIMEOUT_MS', '60000'))
MIN_TOPIC_LENGTH = 3

# health grading thresholds
HEALTH_ERROR_RATE_WARN = 0.1
HEALTH_ERROR_RATE_FAIL = 0.3
HEALTH_RESPONSE_WARN_MS = 5000
HEALTH_RESPONSE_FAIL_MS = 10000
HEALTH_CACHE_HIT_WARN = 0.5


def _grade(value: float, warn_at: float, fail_at: float) -> str:
    if value < warn_at:
        return 'pass'
    if value < fail_at:
        return 'warn'
    return 'fail'


class FlashcardGenerationService:
    _instance = None

    def __init__(self, provider=None, circuit_breaker: Optional[CircuitBreaker] = None, retry_manager: Optional[RetryManager] = None, model: str = OPENROUTER_DEFAULT_MODEL, timeout_ms: int = OPENROUTER_TIMEOUT_MS):
        self.provider = provider
        self.circuit_breaker = circuit_breaker or CircuitBreaker(CircuitBreakerConfig(threshold=CIRCUIT_BREAKER_THRESHOLD, timeout=CIRCUIT_BREAKER_TIMEOUT_MS))
        self.retry_manager = retry_manager or RetryManager(cache=make_response_cache())
        self.model = model
        self.timeout_ms = timeout_ms
        self.request_count = 0
        self.last_error: Optional[str] = None
        self.error_counts: Dict[str, int] = {}
        LOG.info('FlashcardGenerationService initialized', extra={'model': self.model, 'configured': self.is_configured})

    @classmethod
    def get_instance(cls) -> 'FlashcardGenerationService':
        if cls._instance is None:
            provider = OpenRouterProvider() if os.getenv('OPENROUTER_API_KEY') else None
            cls._instance = FlashcardGenerationService(provider=provider)
        return cls._instance

    @property
    def is_configured(self) -> bool:
        return self.provider is not None

    async def generate_flashcards(self, request: FlashcardGenerationRequest) -> GenerationResult:
        start = time.time()
        self.request_count += 1
        try:
            self._validate_request(request)
            if not self.circuit_breaker.can_execute():
                raise CircuitOpenError()
            if self.provider is None:
                raise AuthenticationError('AI provider is not configured')

            messages = build_messages(request)
            model = self.model

            async def call_provider():
                return await self.provider.complete(
                    messages,
                    model,
                    temperature=OPENROUTER_TEMPERATURE,
                    max_tokens=OPENROUTER_MAX_TOKENS,
                    top_p=OPENROUTER_TOP_P,
                )

            async def attempt():
                raw = await self.circuit_breaker.execute(call_provider, timeout_ms=self.timeout_ms)
                # cache only validated batches, never raw text
                return parse_structured_response(raw).model_dump(mode='json')

            result = await self.retry_manager.execute_with_retry(
                attempt,
                RETRY_STRATEGY,
                cache_key=self.generate_cache_key(request),
                cache_ttl=RESPONSE_CACHE_TTL_MS,
            )
            batch = FlashcardBatch.model_validate(result.data)
        except ProviderError as e:
            self.last_error = e.message
            self._count_error(e)
            raise
        except Exception as e:
            err = as_provider_error(e)
            self.last_error = err.message
            self._count_error(err)
            LOG.exception('flashcard_generation_unexpected_error', exc_info=True)
            raise err from e

        processing_ms = int((time.time() - start) * 1000)
        LOG.info('flashcards_generated', extra={'model': self.model, 'count': len(batch.flashcards), 'attempts': result.attempts, 'duration_ms': processing_ms})
        return GenerationResult(
            flashcards=batch.flashcards,
            metadata=GenerationMetadata(model_used=self.model, processing_time_ms=processing_ms, retry_count=min(request.retry_count, 3)),
        )

    def generate_cache_key(self, request: FlashcardGenerationRequest) -> str:
        key_data = {
            'topic': request.topic.lower().strip(),
            'difficulty': request.difficulty_level.value,
            'count': request.count,
            'category': request.category.lower().strip() if request.category else None,
            'model': self.model,
        }
        return 'flashcards:' + json.dumps(key_data, separators=(',', ':'))

    def set_model(self, model: str):
        if model not in AVAILABLE_MODELS:
            raise ValueError(f'Unsupported model: {model}. Available models: {", ".join(AVAILABLE_MODELS)}')
        self.model = model

    def get_service_status(self) -> Dict[str, Any]:
        return {
            'is_healthy': self.circuit_breaker.is_healthy(),
            'circuit_breaker_state': self.circuit_breaker.get_state().value,
            'last_error': self.last_error,
            'request_count': self.request_count,
            'model': self.model,
            'configured': self.is_configured,
            'error_breakdown': dict(self.error_counts),
        }

    def get_detailed_metrics(self) -> Dict[str, Any]:
        return {
            'service': self.get_service_status(),
            'circuit_breaker': self.circuit_breaker.get_metrics(),
            'retry': self.retry_manager.get_stats(),
            'cache': self.retry_manager.get_cache_stats(),
        }

    def perform_health_check(self) -> Dict[str, Any]:
        """Grade service, breaker, latency and cache as pass/warn/fail.

        Any ``fail`` makes the result ``unhealthy``, any ``warn`` makes it
        ``degraded``. The error rate is only graded once the breaker has seen
        ``min_request_count`` calls.
        """
        breaker = self.circuit_breaker.get_metrics()
        cache = self.retry_manager.get_cache_stats()

        if breaker['total_requests'] >= self.circuit_breaker.config.min_request_count:
            service_status = _grade(breaker['failure_rate'], HEALTH_ERROR_RATE_WARN, HEALTH_ERROR_RATE_FAIL)
            service_message = f"Error rate is {breaker['failure_rate'] * 100:.1f}%"
        else:
            service_status = 'pass'
            service_message = 'Too few requests to grade the error rate'

        state = breaker['state']
        breaker_status = {'CLOSED': 'pass', 'HALF_OPEN': 'warn'}.get(state, 'fail')

        avg = breaker['average_response_time']
        lookups = cache['total_hits'] + cache['total_misses']
        cache_status = 'pass' if not lookups or cache['hit_rate'] > HEALTH_CACHE_HIT_WARN else 'warn'

        checks = {
            'service': {
                'status': service_status,
                'message': service_message,
                'details': {
                    'error_rate': breaker['failure_rate'],
                    'request_count': self.request_count,
                    'error_breakdown': dict(self.error_counts),
                },
            },
            'circuit_breaker': {
                'status': breaker_status,
                'message': f'Circuit breaker is {state.lower()}',
                'details': {'state': state, 'transitions': len(breaker['state_change_history'])},
            },
            'api': {
                'status': _grade(avg, HEALTH_RESPONSE_WARN_MS, HEALTH_RESPONSE_FAIL_MS),
                'message': f'Average response time is {avg:.0f} ms',
                'details': {'average_response_time': avg, 'p95_response_time': breaker['p95_response_time']},
            },
            'cache': {
                'status': cache_status,
                'message': f"Cache hit rate is {cache['hit_rate'] * 100:.0f}%",
                'details': {'hit_rate': cache['hit_rate'], 'size': cache['size']},
            },
        }

        failed = [name for name, check in checks.items() if check['status'] == 'fail']
        warned = [name for name, check in checks.items() if check['status'] == 'warn']
        if failed:
            status, message, flagged = 'unhealthy', f'{len(failed)} health check(s) failed', failed
        elif warned:
            status, message, flagged = 'degraded', f'{len(warned)} health check(s) have warnings', warned
        else:
            status, message, flagged = 'healthy', 'All health checks passed', []
        return {
            'status': status,
            'checks': checks,
            'overall': {'message': message, 'details': [f"{name}: {checks[name]['message']}" for name in flagged]},
        }

    def reset_circuit_breaker(self):
        self.circuit_breaker.reset()

    def force_circuit_breaker_open(self, reason: str):
        self.circuit_breaker.force_open(reason)

    def _validate_request(self, request: FlashcardGenerationRequest):
        topic = request.topic or ''
        if len(topic.strip()) < MIN_TOPIC_LENGTH:
            raise InvalidRequestError(f'Topic must be at least {MIN_TOPIC_LENGTH} characters long')
        if len(topic) > TOPIC_MAX_LENGTH:
            raise InvalidRequestError(f'Topic must be at most {TOPIC_MAX_LENGTH} characters')
        if request.count < MIN_FLASHCARDS or request.count > MAX_FLASHCARDS:
            raise InvalidRequestError(f'Count must be between {MIN_FLASHCARDS} and {MAX_FLASHCARDS}')
        if request.additional_context and len(request.additional_context) > CONTEXT_MAX_LENGTH:
            raise InvalidRequestError(f'Additional context must be at most {CONTEXT_MAX_LENGTH} characters')

    def _count_error(self, error: ProviderError):
        # rejected requests say nothing about provider health
        if isinstance(error, InvalidRequestError):
            return
        self.error_counts[error.kind.value] = self.error_counts.get(error.kind.value, 0) + 1
