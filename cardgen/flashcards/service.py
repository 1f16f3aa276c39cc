from datetime import timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from cardgen.flashcards.content_hash import generate_content_hash
from cardgen.flashcards.duplicate_check import DuplicateDetector, DuplicateType
from cardgen.flashcards.models import (
    CreateFlashcardRequest,
    FlashcardDto,
    FlashcardListQuery,
    FlashcardStats,
    Pagination,
    UpdateFlashcardRequest,
)
from cardgen.flashcards.repository import FlashcardRepository, make_repository, new_record, total_pages, utcnow
from cardgen.utils import get_logger

LOG = get_logger()


class FlashcardServiceError(Exception):
    pass


class FlashcardNotFoundError(FlashcardServiceError):
    def __init__(self, flashcard_id: str):
        super().__init__(f'Flashcard {flashcard_id} not found')
        self.flashcard_id = flashcard_id


class DuplicateFlashcardError(FlashcardServiceError):
    def __init__(self, existing_flashcard_id: Optional[str], field: str = 'front_text'):
        super().__init__('Another flashcard with identical front text exists')
        self.existing_flashcard_id = existing_flashcard_id
        self.field = field


class FlashcardService:
    """Save path for curated flashcards.

    Exact duplicates (same normalized front text) are rejected. Similar
    cards are allowed through; callers surface them with check-duplicate
    before saving.
    """
    _instance = None

    def __init__(self, repository: Optional[FlashcardRepository] = None, detector: Optional[DuplicateDetector] = None):
        self.repository = repository if repository is not None else make_repository()
        self.detector = detector or DuplicateDetector(self.repository)

    @classmethod
    def get_instance(cls) -> 'FlashcardService':
        if cls._instance is None:
            cls._instance = FlashcardService()
        return cls._instance

    def create_flashcard(self, user_id: str, req: CreateFlashcardRequest) -> FlashcardDto:
        check = self.detector.check_duplicate(req.front_text, req.back_text, user_id=user_id)
        if check.duplicate_type == DuplicateType.EXACT:
            raise DuplicateFlashcardError(check.existing_flashcard_id)
        if check.duplicate_type == DuplicateType.SIMILAR:
            LOG.info('similar_flashcard_saved', extra={'existing_flashcard_id': check.existing_flashcard_id, 'similarity_score': check.similarity_score})

        record = new_record(
            user_id,
            req.front_text,
            req.back_text,
            generate_content_hash(req.front_text),
            generate_content_hash(req.back_text),
            req.source.value,
        )
        saved = self.repository.insert(record)
        LOG.info('flashcard_created', extra={'flashcard_id': saved['id'], 'source': req.source.value})
        return FlashcardDto.from_record(saved)

    def create_flashcards(self, user_id: str, items: List[Any]) -> Dict[str, Any]:
        """Create a batch; every item succeeds or fails on its own."""
        results = []
        created = 0
        for index, item in enumerate(items):
            try:
                req = item if isinstance(item, CreateFlashcardRequest) else CreateFlashcardRequest.model_validate(item)
            except ValidationError as e:
                first = e.errors()[0]
                field = '.'.join(str(p) for p in first.get('loc', ())) or None
                results.append({'index': index, 'success': False, 'error': {'code': 'VALIDATION_ERROR', 'message': first.get('msg', str(e)), 'field': field}})
                continue
            try:
                dto = self.create_flashcard(user_id, req)
                results.append({'index': index, 'success': True, 'flashcard': dto.model_dump(mode='json')})
                created += 1
            except DuplicateFlashcardError as e:
                results.append({'index': index, 'success': False, 'error': {'code': 'DUPLICATE', 'message': str(e), 'field': e.field, 'existing_flashcard_id': e.existing_flashcard_id}})
        return {'created_count': created, 'failed_count': len(items) - created, 'results': results}

    def update_flashcard(self, user_id: str, flashcard_id: str, req: UpdateFlashcardRequest) -> FlashcardDto:
        current = self.repository.get(user_id, flashcard_id)
        if current is None:
            raise FlashcardNotFoundError(flashcard_id)

        fields: Dict[str, Any] = {'source': req.source.value, 'updated_at': utcnow()}
        # each changed text carries its recomputed hash in the same write
        if req.front_text is not None and req.front_text != current['front_text']:
            front_hash = generate_content_hash(req.front_text)
            clash = self.repository.find_by_hash(user_id, front_hash)
            if clash is not None and str(clash['id']) != str(flashcard_id):
                raise DuplicateFlashcardError(str(clash['id']))
            fields['front_text'] = req.front_text
            fields['front_text_hash'] = front_hash
        if req.back_text is not None and req.back_text != current['back_text']:
            fields['back_text'] = req.back_text
            fields['back_text_hash'] = generate_content_hash(req.back_text)

        updated = self.repository.update(flashcard_id, fields)
        if updated is None:
            raise FlashcardNotFoundError(flashcard_id)
        LOG.info('flashcard_updated', extra={'flashcard_id': flashcard_id, 'fields': sorted(fields)})
        return FlashcardDto.from_record(updated)

    def delete_flashcard(self, user_id: str, flashcard_id: str):
        if self.repository.get(user_id, flashcard_id) is None:
            raise FlashcardNotFoundError(flashcard_id)
        self.repository.soft_delete(flashcard_id)
        LOG.info('flashcard_deleted', extra={'flashcard_id': flashcard_id})

    def bulk_delete_flashcards(self, user_id: str, flashcard_ids: List[str]) -> Dict[str, Any]:
        deleted, failed = [], []
        for fid in flashcard_ids:
            if self.repository.get(user_id, fid) is not None and self.repository.soft_delete(fid):
                deleted.append(fid)
            else:
                failed.append(fid)
        LOG.info('flashcards_bulk_deleted', extra={'deleted_count': len(deleted), 'failed_count': len(failed)})
        return {'deleted_count': len(deleted), 'failed_ids': failed}

    def get_flashcards(self, user_id: str, query: FlashcardListQuery) -> Dict[str, Any]:
        if query.due_before is not None and query.due_before.tzinfo is None:
            query = query.model_copy(update={'due_before': query.due_before.replace(tzinfo=timezone.utc)})
        rows, total = self.repository.list_page(user_id, query)
        pagination = Pagination(
            current_page=query.page,
            total_pages=total_pages(total, query.limit),
            total_count=total,
            limit=query.limit,
        )
        return {
            'flashcards': [FlashcardDto.from_record(r).model_dump(mode='json') for r in rows],
            'pagination': pagination.model_dump(),
        }

    def get_stats(self, user_id: str) -> FlashcardStats:
        by_source = self.repository.count_by_source(user_id)
        return FlashcardStats(
            total_flashcards=sum(by_source.values()),
            flashcards_by_source=by_source,
            due_count=self.repository.count_due(user_id, utcnow()),
            total_reviews=self.repository.total_reviews(user_id),
        )
