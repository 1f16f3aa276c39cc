import os
import pytest
from unittest.mock import MagicMock
from pathlib import Path

from dotenv import load_dotenv

from tests.fixtures.clock import ManualClock, SleepRecorder

# load test env first
env_path = Path(__file__).resolve().parents[1] / '.env.test'
if env_path.exists():
    load_dotenv(env_path)

os.environ.setdefault('TESTING', '1')
os.environ['LOG_TO_FILE'] = 'false'
# module-level config is read at import; keep tests on the in-process backends
for _key in ('OPENROUTER_API_KEY', 'DATABASE_URL', 'REDIS_URL', 'REDIS_CACHE_ENABLED'):
    os.environ.pop(_key, None)


@pytest.fixture(autouse=True)
def silence_logger(monkeypatch):
    # event helpers look up get_logger on every call
    try:
        import cardgen.utils.logger as logger_mod
        monkeypatch.setattr(logger_mod, 'get_logger', lambda *a, **k: MagicMock())
    except Exception:
        pass
    yield


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    from cardgen.flashcards.service import FlashcardService
    from cardgen.generation.orchestrator import GenerationOrchestrator
    from cardgen.generation.service import FlashcardGenerationService

    monkeypatch.setattr(FlashcardService, '_instance', None)
    monkeypatch.setattr(GenerationOrchestrator, '_instance', None)
    monkeypatch.setattr(FlashcardGenerationService, '_instance', None)
    yield


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def memory_repo():
    from cardgen.flashcards.repository import InMemoryFlashcardRepository
    return InMemoryFlashcardRepository()


@pytest.fixture
def mock_redis():
    from tests.fixtures.mock_redis import MockRedisClient
    return MockRedisClient()


@pytest.fixture
def fake_provider():
    from tests.fixtures.mock_provider import FakeProvider
    return FakeProvider()


@pytest.fixture
def make_service(no_sleep, clock):
    """Build a generation service around a provider with injected sleep and clock."""
    from cardgen.generation.service import FlashcardGenerationService
    from cardgen.resilience import CircuitBreaker, CircuitBreakerConfig, InMemoryResponseCache, RetryManager

    def _make(provider, threshold=5, min_request_count=10, strategy_cache=None):
        breaker = CircuitBreaker(CircuitBreakerConfig(threshold=threshold, min_request_count=min_request_count), clock=clock)
        retry = RetryManager(cache=strategy_cache or InMemoryResponseCache(clock=clock), sleep=no_sleep, clock=clock)
        return FlashcardGenerationService(provider=provider, circuit_breaker=breaker, retry_manager=retry, model='openai/gpt-4o-mini')

    return _make


@pytest.fixture
def sample_text():
    from tests.fixtures.sample_data import CELL_BIOLOGY_TEXT
    return CELL_BIOLOGY_TEXT
