import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cardgen import __version__
from cardgen.errors import CircuitOpenError, ErrorKind, InvalidRequestError, ProviderError
from cardgen.flashcards import (
    BulkDeleteRequest,
    CreateFlashcardRequest,
    DuplicateCheckError,
    DuplicateFlashcardError,
    FlashcardListQuery,
    FlashcardNotFoundError,
    FlashcardService,
    RepositoryError,
    UpdateFlashcardRequest,
    sanitize_input_text,
)
from cardgen.flashcards.models import BACK_TEXT_MAX, FRONT_TEXT_MAX, MAX_BATCH_SIZE
from cardgen.generation import (
    Difficulty,
    FlashcardGenerationRequest,
    GenerationError,
    GenerationOrchestrator,
)
from cardgen.resilience import RateLimiter, make_rate_limiter
from cardgen.utils import get_logger, log_error, log_rate_limited, log_request, set_request_context

LOG = get_logger()

ANONYMOUS_USER = 'anonymous-user'
GENERATION_TEXT_MIN = 1000
GENERATION_TEXT_MAX = 10000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    HOST: str = '0.0.0.0'
    PORT: int = 8000
    ENVIRONMENT: str = 'development'
    LOG_LEVEL: str = 'INFO'
    CORS_ORIGIN: str = '*'
    REDIS_REQUIRED_FOR_READY: bool = False
    OPENROUTER_REQUIRED_FOR_READY: bool = False
    DATABASE_REQUIRED_FOR_READY: bool = True


settings = Settings()

app = FastAPI(title='Flashcard Generation Service', version=__version__, description='AI flashcard generation with resilient provider access')

# CORS config
origins = [o.strip() for o in settings.CORS_ORIGIN.split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = make_rate_limiter()
    return _rate_limiter


@app.middleware('http')
async def add_request_id_and_logging(request: Request, call_next):
    # prefer incoming X-Request-ID header for cross-service tracing
    request_id = request.headers.get('x-request-id') or os.urandom(8).hex()
    user_id = request.headers.get('x-user-id') or None
    request.state.request_id = request_id
    request.state.user_id = user_id
    set_request_context(request_id, user_id)
    start = time.time()
    try:
        response: Response = await call_next(request)
    except Exception:
        LOG.exception('Unhandled exception in request', exc_info=True)
        body = {'success': False, 'error': 'Internal server error', 'request_id': request_id}
        return JSONResponse(status_code=500, content=body, headers={'X-Request-ID': request_id})
    duration = int((time.time() - start) * 1000)
    log_request(request_id, request.method, request.url.path, response.status_code, duration, ip=request.client.host if request.client else None)
    # echo back the request id for downstream tracing
    response.headers['X-Request-ID'] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', None) or os.urandom(8).hex()


def _error(status_code: int, error: str, request_id: str, details: Optional[List[Dict[str, Any]]] = None, headers: Optional[Dict[str, str]] = None, **extra) -> JSONResponse:
    body = {'success': False, 'error': error, 'details': details or [], 'request_id': request_id}
    body.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _format_validation_errors(errors) -> List[Dict[str, Any]]:
    out = []
    for err in errors:
        loc = [str(p) for p in err.get('loc', ()) if p not in ('body', 'query', 'path')]
        out.append({'field': '.'.join(loc) or None, 'code': 'VALIDATION_ERROR', 'message': err.get('msg', 'Invalid value')})
    return out


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error(400, 'Validation failed', _request_id(request), details=_format_validation_errors(exc.errors()))


def _require_user(request: Request) -> Optional[str]:
    return getattr(request.state, 'user_id', None)


def _unauthorized(request: Request) -> JSONResponse:
    return _error(401, 'Authentication required', _request_id(request), details=[{'code': 'NO_SESSION', 'message': 'X-User-ID header is required'}])


def _rate_limited(user_id: str, request: Request) -> Optional[JSONResponse]:
    result = get_rate_limiter().is_allowed(user_id)
    if result.allowed:
        return None
    log_rate_limited(user_id, result.retry_after)
    return _error(
        429,
        'Rate limit exceeded',
        _request_id(request),
        details=[{'code': 'RATE_LIMIT', 'message': f'Too many generation requests, retry in {result.retry_after} seconds'}],
        headers={'Retry-After': str(result.retry_after)},
        is_retryable=True,
        retry_after=result.retry_after,
    )


def _provider_error_response(e: ProviderError, request: Request) -> JSONResponse:
    request_id = _request_id(request)
    detail = {'code': e.kind.value, 'message': e.message}
    if isinstance(e, InvalidRequestError):
        return _error(400, 'Validation failed', request_id, details=[detail])
    if isinstance(e, CircuitOpenError):
        orchestrator = GenerationOrchestrator.get_instance()
        wait_s = int(orchestrator.service.circuit_breaker.get_time_until_next_attempt() / 1000) or None
        headers = {'Retry-After': str(wait_s)} if wait_s else None
        return _error(503, 'AI service temporarily unavailable', request_id, details=[detail], headers=headers, is_retryable=True, retry_after=wait_s)
    if e.kind == ErrorKind.RATE_LIMIT:
        headers = {'Retry-After': str(e.retry_after)} if e.retry_after else None
        return _error(429, 'AI service rate limit exceeded', request_id, details=[detail], headers=headers, is_retryable=True, retry_after=e.retry_after)
    return _error(503, 'AI service error', request_id, details=[detail], is_retryable=e.is_retryable, retry_after=e.retry_after)


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat(), 'service': 'cardgen'}


def _check_database():
    try:
        return 'ok' if FlashcardService.get_instance().repository.ping() else 'error: database unreachable'
    except Exception as e:
        return f'error: {str(e)}'


def _check_redis():
    url = os.getenv('REDIS_URL')
    if not url:
        return 'disabled'
    try:
        import redis
        r = redis.from_url(url, socket_timeout=3)
        r.ping()
        return 'ok'
    except Exception as e:
        return f'error: {str(e)}'


def _check_openrouter():
    try:
        key = os.getenv('OPENROUTER_API_KEY')
        if not key:
            if settings.OPENROUTER_REQUIRED_FOR_READY:
                return 'error: no openrouter key'
            return 'warn: no openrouter key, serving mock candidates'
        # lightweight connectivity check using the public models list endpoint
        import requests
        base_url = os.getenv('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')
        resp = requests.get(f'{base_url}/models', headers={'Authorization': f'Bearer {key}'}, timeout=5)
        if resp.status_code == 200:
            return 'ok'
        return f'error: openrouter status {resp.status_code}'
    except Exception as e:
        return f'error: {str(e)}'


@app.get('/ready')
async def ready():
    services = {
        'database': _check_database(),
        'redis': _check_redis(),
        'openrouter': _check_openrouter(),
    }
    ready_ok = True
    if settings.DATABASE_REQUIRED_FOR_READY and services['database'].startswith('error'):
        ready_ok = False
    if settings.REDIS_REQUIRED_FOR_READY and services['redis'].startswith('error'):
        ready_ok = False
    if settings.OPENROUTER_REQUIRED_FOR_READY and services['openrouter'].startswith('error'):
        ready_ok = False
    status_code = 200 if ready_ok else 503
    return JSONResponse(status_code=status_code, content={'status': 'ready' if ready_ok else 'not ready', 'services': services})


class GenerateCandidatesRequest(BaseModel):
    text: str = Field(..., min_length=GENERATION_TEXT_MIN, max_length=GENERATION_TEXT_MAX, description='Source text for flashcard candidates')
    retry_count: int = Field(0, ge=0, le=3)

    @field_validator('text', mode='before')
    @classmethod
    def sanitize(cls, v):
        return sanitize_input_text(v) if isinstance(v, str) else v


class GenerateProposalsRequest(BaseModel):
    topic: str = Field(..., min_length=3, max_length=200)
    difficulty_level: Difficulty = Difficulty.MEDIUM
    count: int = Field(5, ge=1, le=10)
    category: Optional[str] = Field(None, max_length=100)
    additional_context: Optional[str] = Field(None, max_length=1000)


class CheckDuplicateRequest(BaseModel):
    front_text: str = Field(..., min_length=1, max_length=FRONT_TEXT_MAX)
    back_text: Optional[str] = Field(None, max_length=BACK_TEXT_MAX)

    @field_validator('front_text', 'back_text', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class ForceOpenRequest(BaseModel):
    reason: str = Field('Manually opened', max_length=200)


@app.post('/ai/generate-candidates')
async def generate_candidates(req: GenerateCandidatesRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request) or ANONYMOUS_USER
    limited = _rate_limited(user_id, fastapi_request)
    if limited is not None:
        return limited

    LOG.info('candidate_generation_start', extra={'request_id': request_id, 'text_length': len(req.text), 'retry_count': req.retry_count})
    try:
        batch = await GenerationOrchestrator.get_instance().generate_candidates(req.text, req.retry_count)
    except GenerationError as e:
        LOG.warning('candidate_generation_failed', extra={'request_id': request_id, 'kind': e.kind.value})
        status = 429 if e.kind == ErrorKind.RATE_LIMIT else 400 if e.kind == ErrorKind.VALIDATION_ERROR else 503
        headers = {'Retry-After': str(e.retry_after)} if e.retry_after else None
        return _error(status, e.message, request_id, details=[e.to_dict()], headers=headers, is_retryable=e.is_retryable, retry_after=e.retry_after)
    except Exception as e:
        log_error(e, {'request_id': request_id, 'endpoint': 'generate-candidates'})
        return _error(500, 'Unexpected error', request_id, details=[{'code': 'UNKNOWN', 'message': str(e)}])

    return {
        'success': True,
        'data': {
            'candidates': [c.model_dump(mode='json') for c in batch.candidates],
            'generation_metadata': batch.metadata.model_dump(mode='json'),
        },
        'request_id': request_id,
    }


@app.post('/flashcards/generate-proposals')
async def generate_proposals(req: GenerateProposalsRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    limited = _rate_limited(user_id, fastapi_request)
    if limited is not None:
        return limited

    service = GenerationOrchestrator.get_instance().service
    gen_request = FlashcardGenerationRequest(
        topic=req.topic,
        difficulty_level=req.difficulty_level,
        count=req.count,
        category=req.category,
        additional_context=req.additional_context,
    )
    try:
        result = await service.generate_flashcards(gen_request)
    except ProviderError as e:
        LOG.warning('proposal_generation_failed', extra={'request_id': request_id, 'kind': e.kind.value, 'error': e.message})
        return _provider_error_response(e, fastapi_request)
    except Exception as e:
        log_error(e, {'request_id': request_id, 'endpoint': 'generate-proposals'})
        return _error(500, 'Unexpected error', request_id, details=[{'code': 'UNKNOWN', 'message': str(e)}])

    return {
        'success': True,
        'data': {
            'flashcards': [f.model_dump(mode='json') for f in result.flashcards],
            'metadata': result.metadata.model_dump(mode='json'),
        },
        'request_id': request_id,
    }


@app.post('/flashcards/check-duplicate')
def check_duplicate(req: CheckDuplicateRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    try:
        result = FlashcardService.get_instance().detector.check_duplicate(req.front_text, req.back_text, user_id=user_id)
    except DuplicateCheckError as e:
        return _error(500, str(e), request_id)
    return {'success': True, 'data': result.model_dump(mode='json'), 'request_id': request_id}


@app.get('/flashcards')
def list_flashcards(fastapi_request: Request, page: int = 1, limit: int = 20, source: Optional[str] = None, due_before: Optional[str] = None, sort: str = 'created_at', order: str = 'desc'):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    try:
        query = FlashcardListQuery(page=page, limit=limit, source=source, due_before=due_before, sort=sort, order=order)
    except ValidationError as e:
        return _error(400, 'Invalid query parameters', request_id, details=_format_validation_errors(e.errors()))
    try:
        data = FlashcardService.get_instance().get_flashcards(user_id, query)
    except RepositoryError:
        return _error(500, 'Database error occurred', request_id)
    return {'success': True, 'data': data, 'request_id': request_id}


@app.post('/flashcards')
def create_flashcards(fastapi_request: Request, body: Dict[str, Any] = Body(...)):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    service = FlashcardService.get_instance()
    try:
        if 'flashcards' in body:
            items = body.get('flashcards')
            if not isinstance(items, list) or not 1 <= len(items) <= MAX_BATCH_SIZE:
                return _error(400, 'Validation failed', request_id, details=[{'field': 'flashcards', 'code': 'VALIDATION_ERROR', 'message': f'flashcards must be a list of 1-{MAX_BATCH_SIZE} items'}])
            result = service.create_flashcards(user_id, items)
            if result['created_count'] == len(items):
                status = 201
            elif result['created_count'] > 0:
                status = 207
            elif all(r['error']['code'] == 'DUPLICATE' for r in result['results']):
                status = 409
            else:
                status = 400
            return JSONResponse(status_code=status, content={'success': result['created_count'] > 0, 'data': result, 'request_id': request_id})

        try:
            req = CreateFlashcardRequest.model_validate(body)
        except ValidationError as e:
            return _error(400, 'Validation failed', request_id, details=_format_validation_errors(e.errors()))
        dto = service.create_flashcard(user_id, req)
        return JSONResponse(status_code=201, content={'success': True, 'data': dto.model_dump(mode='json'), 'request_id': request_id})
    except DuplicateFlashcardError as e:
        return _error(409, 'Duplicate entry found', request_id, details=[{'field': e.field, 'code': 'DUPLICATE', 'message': str(e)}], existing_flashcard_id=e.existing_flashcard_id)
    except (DuplicateCheckError, RepositoryError):
        LOG.exception('flashcard_create_failed', exc_info=True)
        return _error(500, 'Database error occurred', request_id)


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return False


@app.delete('/flashcards/bulk')
def bulk_delete_flashcards(req: BulkDeleteRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    invalid = [fid for fid in req.flashcard_ids if not _valid_uuid(fid)]
    if invalid:
        return _error(400, 'Validation failed', request_id, details=[{'field': 'flashcard_ids', 'code': 'VALIDATION_ERROR', 'message': f'Invalid flashcard ID format: {fid}'} for fid in invalid])
    try:
        result = FlashcardService.get_instance().bulk_delete_flashcards(user_id, req.flashcard_ids)
    except RepositoryError:
        return _error(500, 'Database error occurred', request_id)
    return {'success': True, 'data': result, 'request_id': request_id}


@app.get('/flashcards/stats')
def flashcard_stats(fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    try:
        stats = FlashcardService.get_instance().get_stats(user_id)
    except RepositoryError:
        return _error(500, 'Database error occurred', request_id)
    return {'success': True, 'data': {'stats': stats.model_dump()}, 'request_id': request_id}


@app.put('/flashcards/{flashcard_id}')
def update_flashcard(flashcard_id: str, req: UpdateFlashcardRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    if not _valid_uuid(flashcard_id):
        return _error(400, 'Invalid flashcard ID format', request_id, details=[{'field': 'id', 'code': 'VALIDATION_ERROR', 'message': 'Invalid UUID'}])
    try:
        dto = FlashcardService.get_instance().update_flashcard(user_id, flashcard_id, req)
    except FlashcardNotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, details=[{'code': 'NOT_FOUND', 'message': str(e)}])
    except DuplicateFlashcardError as e:
        return _error(409, 'Duplicate entry found', request_id, details=[{'field': e.field, 'code': 'DUPLICATE', 'message': str(e)}], existing_flashcard_id=e.existing_flashcard_id)
    except RepositoryError:
        return _error(500, 'Database error occurred', request_id)
    return {'success': True, 'data': dto.model_dump(mode='json'), 'request_id': request_id}


@app.delete('/flashcards/{flashcard_id}')
def delete_flashcard(flashcard_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = _require_user(fastapi_request)
    if not user_id:
        return _unauthorized(fastapi_request)
    if not _valid_uuid(flashcard_id):
        return _error(400, 'Invalid flashcard ID format', request_id, details=[{'field': 'id', 'code': 'VALIDATION_ERROR', 'message': 'Invalid UUID'}])
    try:
        FlashcardService.get_instance().delete_flashcard(user_id, flashcard_id)
    except FlashcardNotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, details=[{'code': 'NOT_FOUND', 'message': str(e)}])
    except RepositoryError:
        return _error(500, 'Database error occurred', request_id)
    return {'success': True, 'message': 'Flashcard deleted successfully', 'request_id': request_id}


@app.get('/openrouter/status')
async def openrouter_status():
    orchestrator = GenerationOrchestrator.get_instance()
    metrics = orchestrator.service.get_detailed_metrics()
    metrics['orchestrator'] = orchestrator.get_status()
    return {'success': True, 'data': metrics}


@app.get('/openrouter/health')
async def openrouter_health():
    orchestrator = GenerationOrchestrator.get_instance()
    service = orchestrator.service
    health = service.perform_health_check()
    body = {
        'status': health['status'],
        'circuit_breaker_state': service.circuit_breaker.get_state().value,
        'mode': orchestrator.mode.value,
        'time_until_next_attempt_ms': service.circuit_breaker.get_time_until_next_attempt(),
        'checks': health['checks'],
        'overall': health['overall'],
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    # degraded still answers 200
    status_code = 503 if health['status'] == 'unhealthy' else 200
    return JSONResponse(status_code=status_code, content=body, headers={'X-Health-Status': health['status']})


@app.post('/openrouter/circuit-breaker/reset')
async def reset_circuit_breaker():
    service = GenerationOrchestrator.get_instance().service
    service.reset_circuit_breaker()
    LOG.info('circuit_breaker_reset_requested')
    return {'success': True, 'data': service.get_service_status()}


@app.post('/openrouter/circuit-breaker/open')
async def open_circuit_breaker(req: Optional[ForceOpenRequest] = None):
    service = GenerationOrchestrator.get_instance().service
    reason = req.reason if req else 'Manually opened'
    service.force_circuit_breaker_open(reason)
    LOG.warning('circuit_breaker_open_requested', extra={'reason': reason})
    return {'success': True, 'data': service.get_service_status()}


@app.on_event('startup')
async def on_startup():
    LOG.info('Flashcard service starting', extra={'env': settings.ENVIRONMENT})
    if not os.getenv('OPENROUTER_API_KEY'):
        LOG.warning('OPENROUTER_API_KEY not set; candidates will come from the mock generator')
    try:
        GenerationOrchestrator.get_instance()
        FlashcardService.get_instance()
        get_rate_limiter()
        LOG.info('services ready')
    except Exception:
        LOG.exception('service_warmup_error', exc_info=True)


@app.on_event('shutdown')
async def on_shutdown():
    LOG.info('Flashcard service shutting down')
    try:
        provider = GenerationOrchestrator.get_instance().service.provider
        if provider is not None and hasattr(provider, 'close'):
            await provider.close()
    except Exception:
        LOG.exception('provider_close_error', exc_info=True)
    try:
        repo = FlashcardService.get_instance().repository
        if hasattr(repo, 'close'):
            repo.close()
    except Exception:
        LOG.exception('repository_close_error', exc_info=True)


if __name__ == '__main__':
    import uvicorn

    workers = int(os.getenv('WORKERS', '1'))
    # uvicorn cannot combine reload with several workers
    if settings.ENVIRONMENT == 'development':
        workers = 1
    reload_enabled = (settings.ENVIRONMENT == 'development') and (workers == 1)

    uvicorn.run(
        'main:app',
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=reload_enabled,
        workers=workers,
    )
