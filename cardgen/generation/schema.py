"""Structured output schema for flashcard generation.

``FLASHCARD_SCHEMA`` is the JSON schema sent along with prompts and used for
the top-level shape check; the pydantic models enforce the per-item limits.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

FRONT_TEXT_MAX = 200
BACK_TEXT_MAX = 500
MIN_FLASHCARDS = 1
MAX_FLASHCARDS = 10


class Difficulty(str, Enum):
    EASY = 'easy'
    MEDIUM = 'medium'
    HARD = 'hard'


FLASHCARD_SCHEMA = {
    'type': 'object',
    'properties': {
        'flashcards': {
            'type': 'array',
            'items': {
                'type': 'object',
                'properties': {
                    'front_text': {'type': 'string', 'maxLength': FRONT_TEXT_MAX, 'description': 'Question or prompt for the front of the flashcard'},
                    'back_text': {'type': 'string', 'maxLength': BACK_TEXT_MAX, 'description': 'Answer or explanation for the back of the flashcard'},
                    'difficulty': {'type': 'string', 'enum': [d.value for d in Difficulty], 'description': 'Difficulty level of the flashcard'},
                    'category': {'type': 'string', 'description': 'Optional category for organizing flashcards'},
                },
                'required': ['front_text', 'back_text', 'difficulty', 'category'],
                'additionalProperties': False,
            },
            'minItems': MIN_FLASHCARDS,
            'maxItems': MAX_FLASHCARDS,
            'description': 'Array of generated flashcards',
        },
    },
    'required': ['flashcards'],
    'additionalProperties': False,
}


class GeneratedFlashcard(BaseModel):
    model_config = ConfigDict(extra='forbid')

    front_text: str = Field(..., min_length=1, max_length=FRONT_TEXT_MAX)
    back_text: str = Field(..., min_length=1, max_length=BACK_TEXT_MAX)
    difficulty: Difficulty
    category: str


class FlashcardBatch(BaseModel):
    model_config = ConfigDict(extra='forbid')

    flashcards: List[GeneratedFlashcard] = Field(..., min_length=MIN_FLASHCARDS, max_length=MAX_FLASHCARDS)


class FlashcardGenerationRequest(BaseModel):
    topic: str
    difficulty_level: Difficulty = Difficulty.MEDIUM
    count: int = 5
    category: Optional[str] = None
    additional_context: Optional[str] = None
    retry_count: int = 0


class FlashcardCandidate(BaseModel):
    id: str
    front_text: str = Field(..., max_length=FRONT_TEXT_MAX)
    back_text: str = Field(..., max_length=BACK_TEXT_MAX)
    confidence: float = Field(..., ge=0.0, le=1.0)
    difficulty: Difficulty
    category: str = 'general'


class GenerationMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_used: str
    processing_time_ms: int = Field(..., ge=0)
    retry_count: int = Field(0, ge=0, le=3)
    mode: str = 'live'


class GenerationResult(BaseModel):
    flashcards: List[GeneratedFlashcard]
    metadata: GenerationMetadata


class CandidateBatch(BaseModel):
    candidates: List[FlashcardCandidate]
    metadata: GenerationMetadata
