"""Structured logging for the service.

One named logger writes JSON lines to stdout and, unless LOG_TO_FILE is off,
to rotating ``combined.log`` and ``error.log`` files. Every record carries the
``request_id``/``user_id`` of the HTTP request being served.
"""
import os
import sys
import logging
import pathlib
import contextvars
from logging.handlers import RotatingFileHandler
from pythonjsonlogger.json import JsonFormatter

LOGGER_NAME = 'cardgen'
JSON_FIELDS = '%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s'
TEXT_FIELDS = '%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s'

_request_ctx = contextvars.ContextVar('cardgen_request_ctx', default=None)


def set_request_context(request_id: str, user_id: str = None):
    _request_ctx.set({'request_id': request_id, 'user_id': user_id})


def get_request_context():
    return _request_ctx.get() or {}


def _inject_request_context(record):
    ctx = get_request_context()
    # explicit extra= values win over the ambient request context
    for field in ('request_id', 'user_id'):
        if getattr(record, field, None) is None:
            setattr(record, field, ctx.get(field))
    return True


class RequestContextFilter(logging.Filter):
    def filter(self, record):
        return _inject_request_context(record)


def _formatter(log_format: str) -> logging.Formatter:
    if log_format == 'json':
        return JsonFormatter(JSON_FIELDS)
    return logging.Formatter(TEXT_FIELDS)


def _file_handlers(directory: str, max_bytes: int, backups: int, fmt: logging.Formatter):
    log_dir = pathlib.Path(directory)
    if not log_dir.is_absolute():
        log_dir = pathlib.Path.cwd() / log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    combined = RotatingFileHandler(log_dir / 'combined.log', maxBytes=max_bytes, backupCount=backups)
    errors_only = RotatingFileHandler(log_dir / 'error.log', maxBytes=max_bytes, backupCount=backups)
    errors_only.setLevel(logging.ERROR)
    for handler in (combined, errors_only):
        handler.setFormatter(fmt)
    return [combined, errors_only]


def get_logger(name: str = LOGGER_NAME):
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
    fmt = _formatter(os.getenv('LOG_FORMAT', 'json'))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    logger.addHandler(console)

    if os.getenv('LOG_TO_FILE', 'true').lower() in ('1', 'true', 'yes'):
        handlers = _file_handlers(
            os.getenv('LOG_FILE_PATH', 'logs'),
            int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024))),
            int(os.getenv('LOG_MAX_FILES', '7')),
            fmt,
        )
        for handler in handlers:
            logger.addHandler(handler)

    logger.addFilter(RequestContextFilter())
    logging.captureWarnings(True)
    return logger


def log_request(request_id: str, method: str, path: str, status_code: int, duration_ms: float, ip: str = None):
    logger = get_logger()
    logger.info('http_request', extra={'request_id': request_id, 'method': method, 'path': path, 'status_code': status_code, 'duration_ms': duration_ms, 'ip': ip})


def log_error(error: Exception, context: dict = None):
    logger = get_logger()
    logger.exception('error', exc_info=error, extra=context or {})


def log_llm_call(model: str, duration_ms: float, attempt: int = 1, cache_hit: bool = False, prompt_tokens: int = None, completion_tokens: int = None):
    logger = get_logger()
    logger.info('llm_call', extra={
        'model': model,
        'duration_ms': duration_ms,
        'attempt': attempt,
        'cache_hit': cache_hit,
        'prompt_tokens': prompt_tokens,
        'completion_tokens': completion_tokens,
    })


def log_generation(model_used: str, candidate_count: int, duration_ms: float, retry_count: int, mode: str):
    logger = get_logger()
    logger.info('flashcard_generation', extra={
        'model_used': model_used,
        'candidate_count': candidate_count,
        'duration_ms': duration_ms,
        'retry_count': retry_count,
        'mode': mode,
    })


def log_circuit_transition(from_state: str, to_state: str, reason: str):
    logger = get_logger()
    # opening is the interesting one for alerting
    level = logging.WARNING if to_state == 'OPEN' else logging.INFO
    logger.log(level, 'circuit_breaker_transition', extra={'from_state': from_state, 'to_state': to_state, 'reason': reason})


def log_duplicate_check(user_id: str, duplicate_type: str, similarity_score: float, scanned: int, duration_ms: float):
    logger = get_logger()
    logger.info('duplicate_check', extra={
        'user_id': user_id,
        'duplicate_type': duplicate_type,
        'similarity_score': similarity_score,
        'scanned': scanned,
        'duration_ms': duration_ms,
    })


def log_rate_limited(user_id: str, retry_after: int):
    logger = get_logger()
    logger.warning('rate_limited', extra={'user_id': user_id, 'retry_after': retry_after})
