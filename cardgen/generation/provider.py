"""Chat-completion provider backed by OpenRouter.

OpenRouter speaks the OpenAI wire protocol, so the official ``openai`` client
is pointed at its base URL. SDK exceptions are translated into the
``cardgen.errors`` taxonomy here and nowhere else.
"""
import os
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from cardgen.errors import (
    AuthenticationError,
    ModelError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    UnknownProviderError,
    error_from_status,
)
from cardgen.utils import get_logger, log_llm_call

LOG = get_logger()

OPENROUTER_BASE_URL = os.getenv('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')
OPENROUTER_TIMEOUT_MS = int(os.getenv('OPENROUTER_TIMEOUT_MS', '30000'))
OPENROUTER_APP_URL = os.getenv('OPENROUTER_APP_URL', 'http://localhost:8000')
OPENROUTER_APP_TITLE = os.getenv('OPENROUTER_APP_TITLE', 'cardgen')


def _retry_after_from(response) -> Optional[int]:
    if response is None:
        return None
    value = response.headers.get('retry-after')
    if not value:
        return None
    try:
        return max(1, int(float(value)))
    except ValueError:
        return None


def translate_openai_error(e: Exception) -> ProviderError:
    # APITimeoutError subclasses APIConnectionError, so it goes first
    if isinstance(e, openai.APITimeoutError):
        return ProviderTimeoutError(str(e) or None)
    if isinstance(e, openai.APIConnectionError):
        return NetworkError(str(e) or None)
    if isinstance(e, openai.AuthenticationError):
        return AuthenticationError(e.message)
    if isinstance(e, openai.RateLimitError):
        retry_after = _retry_after_from(e.response)
        return RateLimitError(e.message, retry_after=retry_after) if retry_after else RateLimitError(e.message)
    if isinstance(e, openai.APIStatusError):
        return error_from_status(e.status_code, e.message, retry_after=_retry_after_from(e.response))
    return UnknownProviderError(str(e))


class OpenRouterProvider:
    """Implements ``async complete(messages, model, **params) -> str``."""

    def __init__(self, api_key: Optional[str] = None, base_url: str = OPENROUTER_BASE_URL, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key or os.getenv('OPENROUTER_API_KEY')
        if client is not None:
            self._client = client
        else:
            if not self.api_key:
                raise AuthenticationError('OPENROUTER_API_KEY not set')
            # retries belong to RetryManager, the SDK must not retry on its own
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=base_url,
                max_retries=0,
                timeout=OPENROUTER_TIMEOUT_MS / 1000.0,
                default_headers={'HTTP-Referer': OPENROUTER_APP_URL, 'X-Title': OPENROUTER_APP_TITLE},
            )

    async def complete(self, messages: List[Dict[str, str]], model: str, **params: Any) -> str:
        start = time.time()
        try:
            resp = await self._client.chat.completions.create(model=model, messages=messages, **params)
        except openai.OpenAIError as e:
            err = translate_openai_error(e)
            LOG.warning('openrouter_call_failed', extra={'model': model, 'kind': err.kind.value, 'error': err.message})
            raise err from e

        duration_ms = int((time.time() - start) * 1000)
        usage = getattr(resp, 'usage', None)
        log_llm_call(
            model,
            duration_ms,
            prompt_tokens=getattr(usage, 'prompt_tokens', None),
            completion_tokens=getattr(usage, 'completion_tokens', None),
        )

        choices = getattr(resp, 'choices', None) or []
        if not choices or choices[0].message is None or not choices[0].message.content:
            raise ModelError('Invalid response format from OpenRouter API')
        return choices[0].message.content

    async def close(self):
        await self._client.close()
