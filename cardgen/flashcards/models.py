import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

FRONT_TEXT_MAX = 200
BACK_TEXT_MAX = 500
MAX_BATCH_SIZE = 50
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_WHITESPACE_RE = re.compile(r'\s+')


def sanitize_input_text(text: str) -> str:
    """Drop control characters and collapse whitespace runs."""
    if not text:
        return ''
    return _WHITESPACE_RE.sub(' ', _CONTROL_CHARS_RE.sub('', text)).strip()


class FlashcardSource(str, Enum):
    AI_FULL = 'ai-full'
    AI_EDIT = 'ai-edit'
    MANUAL = 'manual'


class UpdateSource(str, Enum):
    AI_EDIT = 'ai-edit'
    MANUAL = 'manual'


class SortField(str, Enum):
    CREATED_AT = 'created_at'
    DUE = 'due'
    DIFFICULTY = 'difficulty'


class SortOrder(str, Enum):
    ASC = 'asc'
    DESC = 'desc'


class CreateFlashcardRequest(BaseModel):
    front_text: str = Field(..., min_length=1, max_length=FRONT_TEXT_MAX)
    back_text: str = Field(..., min_length=1, max_length=BACK_TEXT_MAX)
    source: FlashcardSource
    candidate_id: Optional[str] = None

    @field_validator('front_text', 'back_text', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class UpdateFlashcardRequest(BaseModel):
    front_text: Optional[str] = Field(None, min_length=1, max_length=FRONT_TEXT_MAX)
    back_text: Optional[str] = Field(None, min_length=1, max_length=BACK_TEXT_MAX)
    source: UpdateSource

    @field_validator('front_text', 'back_text', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class BulkDeleteRequest(BaseModel):
    flashcard_ids: List[str] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class FlashcardListQuery(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    source: Optional[FlashcardSource] = None
    due_before: Optional[datetime] = None
    sort: SortField = SortField.CREATED_AT
    order: SortOrder = SortOrder.DESC


class FlashcardDto(BaseModel):
    id: str
    front_text: str
    back_text: str
    source: FlashcardSource
    difficulty: float = 0.0
    due: Optional[datetime] = None
    reps: int = 0
    scheduled_days: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict) -> 'FlashcardDto':
        # hashes, owner and the deleted flag stay server-side
        data = {k: record[k] for k in cls.model_fields if record.get(k) is not None}
        data['id'] = str(record['id'])
        return cls(**data)


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    limit: int


class FlashcardStats(BaseModel):
    total_flashcards: int
    flashcards_by_source: Dict[str, int]
    due_count: int
    total_reviews: int
