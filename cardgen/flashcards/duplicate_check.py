"""Duplicate detection against a user's stored flashcards.

Exact matches come from the front-text hash. Near matches come from a full
scan of the user's active flashcards scored by edit-distance similarity,
which is linear in the number of stored cards.
"""
import os
import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from cardgen.flashcards.content_hash import calculate_similarity, generate_content_hash
from cardgen.utils import get_logger, log_duplicate_check

LOG = get_logger()

DUPLICATE_SIMILARITY_THRESHOLD = float(os.getenv('DUPLICATE_SIMILARITY_THRESHOLD', '0.8'))
FRONT_WEIGHT = 0.7
BACK_WEIGHT = 0.3


class DuplicateCheckError(Exception):
    pass


class DuplicateType(str, Enum):
    EXACT = 'exact'
    SIMILAR = 'similar'
    NONE = 'none'


class DuplicateCheckResult(BaseModel):
    is_duplicate: bool
    existing_flashcard_id: Optional[str] = None
    similarity_score: float
    duplicate_type: DuplicateType


class DuplicateDetector:

    def __init__(self, repository, similarity_threshold: float = DUPLICATE_SIMILARITY_THRESHOLD):
        self.repository = repository
        self.similarity_threshold = similarity_threshold

    def check_duplicate(self, front_text: str, back_text: Optional[str] = None, user_id: str = None) -> DuplicateCheckResult:
        start = time.time()
        scanned = 0
        try:
            exact = self.repository.find_by_hash(user_id, generate_content_hash(front_text))
            if exact is not None:
                result = DuplicateCheckResult(
                    is_duplicate=True,
                    existing_flashcard_id=str(exact['id']),
                    similarity_score=1.0,
                    duplicate_type=DuplicateType.EXACT,
                )
            else:
                candidates = self.repository.list_active(user_id)
                scanned = len(candidates)
                result = self._best_similar(front_text, back_text, candidates)
        except DuplicateCheckError:
            raise
        except Exception as e:
            LOG.exception('duplicate_check_failed', exc_info=True)
            raise DuplicateCheckError('Failed to check for duplicates') from e

        log_duplicate_check(user_id, result.duplicate_type.value, result.similarity_score, scanned, int((time.time() - start) * 1000))
        return result

    def _best_similar(self, front_text: str, back_text: Optional[str], flashcards) -> DuplicateCheckResult:
        best_id = None
        best_score = 0.0
        for card in flashcards:
            score = calculate_similarity(front_text, card['front_text'])
            if back_text and card.get('back_text'):
                score = score * FRONT_WEIGHT + calculate_similarity(back_text, card['back_text']) * BACK_WEIGHT
            if score >= self.similarity_threshold and (best_id is None or score > best_score):
                best_id = str(card['id'])
                best_score = score

        if best_id is None:
            return DuplicateCheckResult(is_duplicate=False, similarity_score=0.0, duplicate_type=DuplicateType.NONE)
        return DuplicateCheckResult(
            is_duplicate=True,
            existing_flashcard_id=best_id,
            similarity_score=best_score,
            duplicate_type=DuplicateType.SIMILAR,
        )
