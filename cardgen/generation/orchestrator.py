"""Turns free text into flashcard candidates.

The orchestrator derives a topic from the text, asks the generation service
for flashcards and maps them to candidates. When the provider proves
unusable it degrades to the deterministic mock generator. The switch is one
way: once ``mode`` is DEGRADED this instance never goes back to LIVE.
"""
from __future__ import annotations

import asyncio
import random
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cardgen.errors import ErrorKind, InvalidRequestError, ProviderError, as_provider_error
from cardgen.generation.mock import MOCK_MODEL, MockGenerator
from cardgen.generation.prompts import CONTEXT_MAX_LENGTH, derive_topic, truncate_text
from cardgen.generation.schema import (
    CandidateBatch,
    Difficulty,
    FlashcardCandidate,
    FlashcardGenerationRequest,
    GeneratedFlashcard,
    GenerationMetadata,
)
from cardgen.generation.service import FlashcardGenerationService
from cardgen.resilience.retry_manager import DEFAULT_STRATEGIES
from cardgen.utils import get_logger, log_generation

LOG = get_logger()

MAX_RETRY_ATTEMPTS = 3
FALLBACK_MODEL = 'fallback'
DEFAULT_CANDIDATE_COUNT = 5
BASE_CONFIDENCE = {
    Difficulty.EASY: 0.95,
    Difficulty.MEDIUM: 0.90,
    Difficulty.HARD: 0.85,
}
CONFIDENCE_VARIANCE = 0.05
MIN_CONFIDENCE = 0.70
MAX_CONFIDENCE = 0.99

_FALLBACK_KINDS = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.VALIDATION_ERROR})
_FALLBACK_PHRASES = (
    'authentication',
    'unauthorized',
    'invalid api key',
    'service unavailable',
    'invalid response',
    'parse',
)
# kinds a GenerationError may carry; anything else is reported as UNKNOWN
_SURFACED_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.MODEL_ERROR, ErrorKind.VALIDATION_ERROR, ErrorKind.UNKNOWN})


class GenerationMode(str, Enum):
    LIVE = 'live'
    DEGRADED = 'degraded'


class GenerationError(Exception):
    """Typed failure surfaced to API callers once generation gives up."""

    def __init__(self, kind: ErrorKind, message: str, is_retryable: bool = False, retry_after: Optional[int] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.is_retryable = is_retryable
        self.retry_after = retry_after
        self.cause = cause

    @classmethod
    def from_error(cls, error: BaseException) -> 'GenerationError':
        if isinstance(error, GenerationError):
            return error
        err = as_provider_error(error)
        kind = err.kind
        if kind == ErrorKind.NETWORK:
            # callers only distinguish transient upstream failures
            kind = ErrorKind.MODEL_ERROR
        elif kind not in _SURFACED_KINDS:
            kind = ErrorKind.UNKNOWN
        return cls(kind, err.message, is_retryable=err.is_retryable, retry_after=err.retry_after, cause=error)

    def to_dict(self) -> Dict[str, Any]:
        out = {'code': self.kind.value, 'message': self.message, 'is_retryable': self.is_retryable}
        if self.retry_after is not None:
            out['retry_after'] = self.retry_after
        return out


def should_fallback_to_mock(error: BaseException) -> bool:
    """True when the provider looks unusable rather than temporarily failing.

    The phrase list is deliberately broad (``parse`` matches many messages).
    A rejected request says nothing about the provider and never counts.
    """
    if isinstance(error, InvalidRequestError):
        return False
    kind = getattr(error, 'kind', None)
    if kind in _FALLBACK_KINDS:
        return True
    msg = str(error).lower()
    return any(p in msg for p in _FALLBACK_PHRASES)


def synthesize_confidence(difficulty: Difficulty, rng: random.Random = None) -> float:
    rng = rng or random
    base = BASE_CONFIDENCE.get(difficulty, BASE_CONFIDENCE[Difficulty.MEDIUM])
    value = base + rng.uniform(-CONFIDENCE_VARIANCE, CONFIDENCE_VARIANCE)
    return round(min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, value)), 4)


class GenerationOrchestrator:
    _instance = None

    def __init__(self, service: Optional[FlashcardGenerationService] = None, mock_generator: Optional[MockGenerator] = None, use_mock: Optional[bool] = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.service = service or FlashcardGenerationService.get_instance()
        self.mock_generator = mock_generator or MockGenerator()
        if use_mock is None:
            use_mock = not self.service.is_configured
        # started without a provider: mock output is the normal mode, not a degradation
        self._mock_from_start = use_mock
        self._mode = GenerationMode.DEGRADED if use_mock else GenerationMode.LIVE
        self._sleep = sleep
        self.mode_changes: List[Dict[str, Any]] = []

    @classmethod
    def get_instance(cls) -> 'GenerationOrchestrator':
        if cls._instance is None:
            cls._instance = GenerationOrchestrator()
        return cls._instance

    @property
    def mode(self) -> GenerationMode:
        return self._mode

    async def generate_candidates(self, text: str, retry_count: int = 0) -> CandidateBatch:
        start = time.time()
        while True:
            try:
                if self._mode == GenerationMode.DEGRADED:
                    candidates = self.mock_generator.generate(text)
                    model_used = MOCK_MODEL if self._mock_from_start else FALLBACK_MODEL
                else:
                    candidates, model_used = await self._generate_live(text, retry_count)
                break
            except ProviderError as e:
                if self._mode == GenerationMode.LIVE and should_fallback_to_mock(e):
                    self._degrade(e)
                    continue
                if e.is_retryable and retry_count < MAX_RETRY_ATTEMPTS:
                    delay_ms = self.service.retry_manager.calculate_delay(retry_count + 1, DEFAULT_STRATEGIES['default'])
                    LOG.info('generation_retry_scheduled', extra={'retry_count': retry_count + 1, 'delay_ms': delay_ms, 'kind': e.kind.value})
                    await self._sleep(delay_ms / 1000.0)
                    retry_count += 1
                    continue
                LOG.warning('generation_failed', extra={'kind': e.kind.value, 'error': e.message, 'retry_count': retry_count})
                raise GenerationError.from_error(e) from e

        processing_ms = int((time.time() - start) * 1000)
        metadata = GenerationMetadata(
            model_used=model_used,
            processing_time_ms=processing_ms,
            retry_count=min(retry_count, MAX_RETRY_ATTEMPTS),
            mode=self._mode.value,
        )
        log_generation(model_used, len(candidates), processing_ms, metadata.retry_count, self._mode.value)
        return CandidateBatch(candidates=candidates, metadata=metadata)

    async def _generate_live(self, text: str, retry_count: int):
        request = FlashcardGenerationRequest(
            topic=derive_topic(text),
            difficulty_level=Difficulty.MEDIUM,
            count=DEFAULT_CANDIDATE_COUNT,
            additional_context=truncate_text(text.strip(), CONTEXT_MAX_LENGTH),
            retry_count=min(retry_count, MAX_RETRY_ATTEMPTS),
        )
        result = await self.service.generate_flashcards(request)
        return [self._to_candidate(card) for card in result.flashcards], result.metadata.model_used

    def _to_candidate(self, card: GeneratedFlashcard) -> FlashcardCandidate:
        return FlashcardCandidate(
            id=str(uuid.uuid4()),
            front_text=card.front_text,
            back_text=card.back_text,
            confidence=synthesize_confidence(card.difficulty),
            difficulty=card.difficulty,
            category=card.category or 'general',
        )

    def _degrade(self, error: BaseException):
        previous = self._mode
        self._mode = GenerationMode.DEGRADED
        change = {'from': previous.value, 'to': self._mode.value, 'reason': str(error), 'timestamp': time.time()}
        self.mode_changes.append(change)
        LOG.warning('generation_mode_degraded', extra={'from_mode': previous.value, 'to_mode': self._mode.value, 'reason': str(error)})

    def get_status(self) -> Dict[str, Any]:
        return {
            'mode': self._mode.value,
            'mock_from_start': self._mock_from_start,
            'mode_changes': list(self.mode_changes),
        }
