"""
AI flashcard generation: prompts, provider adapter, structured response
parsing, the guarded generation service and the text-to-candidates
orchestrator with mock fallback.
"""

from .schema import (
	FLASHCARD_SCHEMA,
	Difficulty,
	GeneratedFlashcard,
	FlashcardBatch,
	FlashcardGenerationRequest,
	FlashcardCandidate,
	GenerationMetadata,
	GenerationResult,
	CandidateBatch,
)
from .response_parser import extract_json, validate_against_schema, parse_structured_response
from .prompts import FLASHCARD_SYSTEM_PROMPT, build_system_prompt, build_user_prompt, truncate_text, derive_topic
from .provider import OpenRouterProvider, translate_openai_error
from .mock import MockGenerator, MOCK_MODEL
from .service import FlashcardGenerationService, AVAILABLE_MODELS
from .orchestrator import (
	GenerationOrchestrator,
	GenerationMode,
	GenerationError,
	should_fallback_to_mock,
	MAX_RETRY_ATTEMPTS,
)

__all__ = [
	'FLASHCARD_SCHEMA',
	'Difficulty',
	'GeneratedFlashcard',
	'FlashcardBatch',
	'FlashcardGenerationRequest',
	'FlashcardCandidate',
	'GenerationMetadata',
	'GenerationResult',
	'CandidateBatch',
	'extract_json',
	'validate_against_schema',
	'parse_structured_response',
	'FLASHCARD_SYSTEM_PROMPT',
	'build_system_prompt',
	'build_user_prompt',
	'truncate_text',
	'derive_topic',
	'OpenRouterProvider',
	'translate_openai_error',
	'MockGenerator',
	'MOCK_MODEL',
	'FlashcardGenerationService',
	'AVAILABLE_MODELS',
	'GenerationOrchestrator',
	'GenerationMode',
	'GenerationError',
	'should_fallback_to_mock',
	'MAX_RETRY_ATTEMPTS',
]
