"""
Flashcard storage: content hashing, duplicate detection, persistence and
the save path for curated cards.
"""

from .content_hash import normalize_text, generate_content_hash, levenshtein_distance, calculate_similarity
from .duplicate_check import DuplicateDetector, DuplicateCheckResult, DuplicateCheckError, DuplicateType
from .models import (
	FlashcardSource,
	CreateFlashcardRequest,
	UpdateFlashcardRequest,
	BulkDeleteRequest,
	FlashcardListQuery,
	FlashcardDto,
	FlashcardStats,
	sanitize_input_text,
)
from .repository import FlashcardRepository, InMemoryFlashcardRepository, PostgresFlashcardRepository, RepositoryError, make_repository
from .service import FlashcardService, FlashcardServiceError, FlashcardNotFoundError, DuplicateFlashcardError

__all__ = [
	'normalize_text',
	'generate_content_hash',
	'levenshtein_distance',
	'calculate_similarity',
	'DuplicateDetector',
	'DuplicateCheckResult',
	'DuplicateCheckError',
	'DuplicateType',
	'FlashcardSource',
	'CreateFlashcardRequest',
	'UpdateFlashcardRequest',
	'BulkDeleteRequest',
	'FlashcardListQuery',
	'FlashcardDto',
	'FlashcardStats',
	'sanitize_input_text',
	'FlashcardRepository',
	'InMemoryFlashcardRepository',
	'PostgresFlashcardRepository',
	'RepositoryError',
	'make_repository',
	'FlashcardService',
	'FlashcardServiceError',
	'FlashcardNotFoundError',
	'DuplicateFlashcardError',
]
