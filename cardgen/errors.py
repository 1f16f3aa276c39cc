"""Error taxonomy for calls to the AI provider.

Every error raised at the provider boundary carries an explicit ``kind`` so
retry and fallback decisions never have to look at message text. Message
matching survives only in ``error_from_message`` for errors that arrive
untagged.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

DEFAULT_RATE_LIMIT_RETRY_AFTER = 60


class ErrorKind(str, Enum):
    RATE_LIMIT = 'RATE_LIMIT'
    TIMEOUT = 'TIMEOUT'
    MODEL_ERROR = 'MODEL_ERROR'
    NETWORK = 'NETWORK'
    AUTHENTICATION = 'AUTHENTICATION'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    SERVICE_UNAVAILABLE = 'SERVICE_UNAVAILABLE'
    UNKNOWN = 'UNKNOWN'


class ProviderError(Exception):
    kind = ErrorKind.UNKNOWN
    default_message = 'Unknown error occurred'
    retryable = False

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None, details: Any = None):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.is_retryable = self.retryable
        self.retry_after = retry_after
        self.details = details

    def __repr__(self):
        return f'{type(self).__name__}(kind={self.kind.value}, message={self.message!r})'


class AuthenticationError(ProviderError):
    kind = ErrorKind.AUTHENTICATION
    default_message = 'Invalid API key'


class RateLimitError(ProviderError):
    kind = ErrorKind.RATE_LIMIT
    default_message = 'Rate limit exceeded'
    retryable = True

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = DEFAULT_RATE_LIMIT_RETRY_AFTER, details: Any = None):
        super().__init__(message, retry_after=retry_after, details=details)


class ProviderTimeoutError(ProviderError):
    kind = ErrorKind.TIMEOUT
    default_message = 'Request timed out'
    retryable = True


class ModelError(ProviderError):
    kind = ErrorKind.MODEL_ERROR
    default_message = 'AI model service error'
    retryable = True


class NetworkError(ProviderError):
    kind = ErrorKind.NETWORK
    default_message = 'Network connection error'
    retryable = True


class ResponseValidationError(ProviderError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = 'Response validation failed'


class InvalidRequestError(ProviderError):
    """A generation request rejected before any provider call."""
    kind = ErrorKind.VALIDATION_ERROR
    default_message = 'Invalid generation request'


class UnknownProviderError(ProviderError):
    kind = ErrorKind.UNKNOWN


class CircuitOpenError(ProviderError):
    """Raised instead of calling the provider while the circuit is open."""
    kind = ErrorKind.SERVICE_UNAVAILABLE
    default_message = 'Service temporarily unavailable due to high error rate'


def error_from_status(status: int, message: Optional[str] = None, retry_after: Optional[int] = None) -> ProviderError:
    if status == 401:
        return AuthenticationError(message)
    if status == 429:
        return RateLimitError(message, retry_after=retry_after or DEFAULT_RATE_LIMIT_RETRY_AFTER)
    if status in (408, 504):
        return ProviderTimeoutError(message)
    if status in (500, 502, 503):
        return ModelError(message)
    return UnknownProviderError(message or f'HTTP {status}')


def error_from_message(message: str) -> ProviderError:
    lower = (message or '').lower()
    if 'rate limit' in lower or '429' in lower:
        return RateLimitError(message)
    if 'timeout' in lower or 'timed out' in lower:
        return ProviderTimeoutError(message)
    if '500' in lower or '502' in lower or '503' in lower:
        return ModelError(message)
    if 'network' in lower or 'connection' in lower:
        return NetworkError(message)
    if 'invalid' in lower or 'validation' in lower:
        return ResponseValidationError(message)
    return UnknownProviderError(message)


def as_provider_error(error: BaseException) -> ProviderError:
    if isinstance(error, ProviderError):
        return error
    return error_from_message(str(error))
