import asyncio
import random
import uuid
import pytest

from tests.fixtures.clock import SleepRecorder
from cardgen.errors import (
    AuthenticationError,
    ErrorKind,
    InvalidRequestError,
    ModelError,
    NetworkError,
    ProviderTimeoutError,
    RateLimitError,
    ResponseValidationError,
)
from cardgen.generation.orchestrator import (
    GenerationError,
    GenerationMode,
    GenerationOrchestrator,
    should_fallback_to_mock,
    synthesize_confidence,
)
from cardgen.generation.schema import Difficulty
from tests.fixtures.mock_provider import FakeProvider, flashcards_json


def _orchestrator(make_service, provider, **service_kw):
    sleep = SleepRecorder()
    orch = GenerationOrchestrator(service=make_service(provider, **service_kw), sleep=sleep)
    return orch, sleep


@pytest.mark.unit
def test_live_generation_maps_flashcards_to_candidates(make_service, sample_text):
    provider = FakeProvider(flashcards_json())
    orch, _ = _orchestrator(make_service, provider)
    assert orch.mode == GenerationMode.LIVE

    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert len(batch.candidates) == 3
    for cand in batch.candidates:
        uuid.UUID(cand.id)
        assert 0.70 <= cand.confidence <= 0.99
        assert len(cand.front_text) <= 200
        assert len(cand.back_text) <= 500
    assert [c.difficulty for c in batch.candidates] == [Difficulty.MEDIUM, Difficulty.EASY, Difficulty.HARD]
    assert batch.metadata.model_used == 'openai/gpt-4o-mini'
    assert batch.metadata.mode == 'live'
    assert batch.metadata.retry_count == 0


@pytest.mark.unit
def test_live_request_uses_derived_topic_and_truncated_context(make_service, sample_text):
    provider = FakeProvider(flashcards_json())
    orch, _ = _orchestrator(make_service, provider)
    asyncio.run(orch.generate_candidates(sample_text))
    user_prompt = provider.calls[0]['messages'][1]['content']
    first_line = user_prompt.split('\n')[0]
    topic = first_line[len('Generate 5 flashcards about: '):]
    assert first_line.startswith('Generate 5 flashcards about: ')
    assert len(topic) <= 200
    assert 'Additional Context: ' in user_prompt
    assert '"difficulty": "medium"' in user_prompt


@pytest.mark.unit
def test_started_without_provider_uses_mock_model(make_service, sample_text):
    orch, _ = _orchestrator(make_service, None)
    assert orch.mode == GenerationMode.DEGRADED
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert 3 <= len(batch.candidates) <= 5
    assert batch.metadata.model_used == 'mock-model'
    assert batch.metadata.mode == 'degraded'
    assert orch.mode_changes == []


@pytest.mark.unit
def test_forced_mock_mode_never_calls_provider(make_service, sample_text):
    provider = FakeProvider()
    orch = GenerationOrchestrator(service=make_service(provider), use_mock=True)
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert provider.calls == []
    assert batch.metadata.model_used == 'mock-model'


@pytest.mark.unit
@pytest.mark.parametrize('failure', [
    AuthenticationError('bad key'),
    ResponseValidationError('Failed to parse structured response: nope'),
    ModelError('Invalid response format from OpenRouter API'),
    'this is not json at all',
])
def test_unusable_provider_degrades_to_fallback(make_service, sample_text, failure):
    provider = FakeProvider(failure)
    orch, _ = _orchestrator(make_service, provider)
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert orch.mode == GenerationMode.DEGRADED
    assert batch.metadata.model_used == 'fallback'
    assert batch.metadata.mode == 'degraded'
    assert 3 <= len(batch.candidates) <= 5
    assert len(orch.mode_changes) == 1
    assert orch.mode_changes[0]['from'] == 'live'
    assert orch.mode_changes[0]['to'] == 'degraded'


@pytest.mark.unit
def test_degradation_is_one_way(make_service, sample_text):
    provider = FakeProvider(AuthenticationError(), flashcards_json())
    orch, _ = _orchestrator(make_service, provider)
    asyncio.run(orch.generate_candidates(sample_text))
    calls_after_first = len(provider.calls)
    batch = asyncio.run(orch.generate_candidates(sample_text))
    # the provider would succeed now, but the instance stays degraded
    assert len(provider.calls) == calls_after_first
    assert batch.metadata.model_used == 'fallback'
    assert len(orch.mode_changes) == 1


@pytest.mark.unit
def test_open_circuit_degrades(make_service, sample_text):
    provider = FakeProvider()
    orch, _ = _orchestrator(make_service, provider)
    orch.service.force_circuit_breaker_open('maintenance')
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert provider.calls == []
    assert batch.metadata.model_used == 'fallback'


@pytest.mark.unit
def test_retryable_failure_retries_then_succeeds(make_service, sample_text):
    provider = FakeProvider(ModelError(), ModelError(), ModelError(), flashcards_json())
    orch, sleep = _orchestrator(make_service, provider)
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert len(provider.calls) == 4
    assert batch.metadata.retry_count == 1
    assert batch.metadata.mode == 'live'
    assert len(sleep.delays) == 1
    assert 0.8 <= sleep.delays[0] <= 1.2


@pytest.mark.unit
def test_retryable_failure_gives_up_after_max_retries(make_service, sample_text):
    provider = FakeProvider(RateLimitError('slow down', retry_after=30))
    orch, sleep = _orchestrator(make_service, provider, threshold=1000, min_request_count=1000)
    with pytest.raises(GenerationError) as ei:
        asyncio.run(orch.generate_candidates(sample_text))
    err = ei.value
    assert err.kind == ErrorKind.RATE_LIMIT
    assert err.is_retryable is True
    assert err.retry_after == 30
    assert len(sleep.delays) == 3
    assert orch.mode == GenerationMode.LIVE
    assert err.to_dict() == {'code': 'RATE_LIMIT', 'message': 'slow down', 'is_retryable': True, 'retry_after': 30}


@pytest.mark.unit
def test_retry_count_at_limit_fails_immediately(make_service, sample_text):
    provider = FakeProvider(ProviderTimeoutError())
    orch, sleep = _orchestrator(make_service, provider)
    with pytest.raises(GenerationError) as ei:
        asyncio.run(orch.generate_candidates(sample_text, retry_count=3))
    assert ei.value.kind == ErrorKind.TIMEOUT
    assert sleep.delays == []


@pytest.mark.unit
def test_network_failures_surface_as_model_error(make_service, sample_text):
    provider = FakeProvider(NetworkError('network down'))
    orch, _ = _orchestrator(make_service, provider)
    with pytest.raises(GenerationError) as ei:
        asyncio.run(orch.generate_candidates(sample_text, retry_count=3))
    assert ei.value.kind == ErrorKind.MODEL_ERROR
    assert 'retry_after' not in ei.value.to_dict()


@pytest.mark.unit
def test_status_reports_mode_history(make_service, sample_text):
    orch, _ = _orchestrator(make_service, FakeProvider(AuthenticationError()))
    asyncio.run(orch.generate_candidates(sample_text))
    status = orch.get_status()
    assert status['mode'] == 'degraded'
    assert status['mock_from_start'] is False
    assert len(status['mode_changes']) == 1


@pytest.mark.unit
@pytest.mark.parametrize('error,expected', [
    (AuthenticationError(), True),
    (ResponseValidationError(), True),
    (ModelError('service unavailable upstream'), True),
    (Exception('could not parse output'), True),
    (Exception('Unauthorized'), True),
    (RateLimitError(), False),
    (ProviderTimeoutError(), False),
    (Exception('boom'), False),
])
def test_should_fallback_to_mock(error, expected):
    assert should_fallback_to_mock(error) is expected


@pytest.mark.unit
def test_generation_error_from_untagged_exception():
    err = GenerationError.from_error(RuntimeError('kaput'))
    assert err.kind == ErrorKind.UNKNOWN
    assert err.is_retryable is False
    assert GenerationError.from_error(err) is err


@pytest.mark.unit
def test_synthesize_confidence_bounds():
    rng = random.Random(7)
    for difficulty, base in ((Difficulty.EASY, 0.95), (Difficulty.MEDIUM, 0.90), (Difficulty.HARD, 0.85)):
        for _ in range(100):
            value = synthesize_confidence(difficulty, rng)
            assert 0.70 <= value <= 0.99
            assert abs(value - base) <= 0.0501


@pytest.mark.unit
@pytest.mark.parametrize('text', ['hi', '  ab  '])
def test_rejected_request_does_not_degrade(make_service, sample_text, text):
    provider = FakeProvider(flashcards_json())
    orch, _ = _orchestrator(make_service, provider)
    with pytest.raises(GenerationError) as ei:
        asyncio.run(orch.generate_candidates(text))
    assert ei.value.kind == ErrorKind.VALIDATION_ERROR
    assert ei.value.is_retryable is False
    assert orch.mode == GenerationMode.LIVE
    assert orch.mode_changes == []
    assert provider.calls == []

    # later requests still reach the provider
    batch = asyncio.run(orch.generate_candidates(sample_text))
    assert batch.metadata.mode == 'live'
    assert batch.metadata.model_used == 'openai/gpt-4o-mini'
    assert len(provider.calls) == 1


@pytest.mark.unit
def test_invalid_request_is_not_a_fallback_reason():
    assert should_fallback_to_mock(InvalidRequestError('Topic must be at least 3 characters long')) is False


@pytest.mark.unit
def test_cancel_during_retry_sleep_records_nothing_more(make_service, sample_text):
    provider = FakeProvider(ModelError())
    delays = []

    async def slow_sleep(seconds):
        delays.append(seconds)
        await asyncio.sleep(3600)

    orch = GenerationOrchestrator(service=make_service(provider), sleep=slow_sleep)
    snapshot = {}

    async def scenario():
        task = asyncio.ensure_future(orch.generate_candidates(sample_text))
        while not delays:
            await asyncio.sleep(0)
        snapshot['calls'] = len(provider.calls)
        snapshot['breaker'] = orch.service.circuit_breaker.get_metrics()['failed_requests']
        snapshot['retry'] = orch.service.retry_manager.get_stats()['total_attempts']
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert len(delays) == 1
    assert len(provider.calls) == snapshot['calls']
    assert orch.service.circuit_breaker.get_metrics()['failed_requests'] == snapshot['breaker']
    assert orch.service.retry_manager.get_stats()['total_attempts'] == snapshot['retry']
    assert orch.mode == GenerationMode.LIVE
