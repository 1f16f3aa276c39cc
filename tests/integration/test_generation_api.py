import pytest
from fastapi.testclient import TestClient

import main
from cardgen.errors import RateLimitError
from cardgen.generation import GenerationOrchestrator
from tests.fixtures.clock import SleepRecorder
from tests.fixtures.mock_provider import FakeProvider, flashcards_json
from tests.fixtures.sample_data import CELL_BIOLOGY_TEXT


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, '_rate_limiter', None)
    return TestClient(main.app)


@pytest.fixture
def live_orchestrator(monkeypatch, make_service):
    def _install(provider, **service_kw):
        orch = GenerationOrchestrator(service=make_service(provider, **service_kw), sleep=SleepRecorder())
        monkeypatch.setattr(GenerationOrchestrator, '_instance', orch)
        return orch
    return _install


@pytest.mark.integration
def test_generate_candidates_in_mock_mode(client):
    resp = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT}, headers={'X-Request-ID': 'req-123'})
    assert resp.status_code == 200
    assert resp.headers['X-Request-ID'] == 'req-123'
    body = resp.json()
    assert body['success'] is True
    assert body['request_id'] == 'req-123'
    candidates = body['data']['candidates']
    assert 1 <= len(candidates) <= 10
    for cand in candidates:
        assert len(cand['front_text']) <= 200
        assert len(cand['back_text']) <= 500
        assert 0.0 <= cand['confidence'] <= 1.0
        assert cand['difficulty'] in ('easy', 'medium', 'hard')
    meta = body['data']['generation_metadata']
    assert meta['model_used'] == 'mock-model'
    assert meta['retry_count'] == 0


@pytest.mark.integration
def test_generate_candidates_accepts_text_at_lower_bound(client):
    text = 'x' * 1000
    resp = client.post('/ai/generate-candidates', json={'text': text})
    assert resp.status_code == 200


@pytest.mark.integration
@pytest.mark.parametrize('payload', [
    {'text': 'too short'},
    {'text': 'x' * 10001},
    {'text': CELL_BIOLOGY_TEXT, 'retry_count': 4},
    {},
])
def test_generate_candidates_rejects_invalid_input(client, payload):
    resp = client.post('/ai/generate-candidates', json=payload)
    assert resp.status_code == 400
    body = resp.json()
    assert body['success'] is False
    assert body['error'] == 'Validation failed'
    assert body['details'][0]['code'] == 'VALIDATION_ERROR'


@pytest.mark.integration
def test_generate_candidates_is_rate_limited_per_user(client):
    headers = {'X-User-ID': 'busy-user'}
    for _ in range(10):
        assert client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT}, headers=headers).status_code == 200
    resp = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT}, headers=headers)
    assert resp.status_code == 429
    assert int(resp.headers['Retry-After']) >= 1
    assert resp.json()['is_retryable'] is True
    # other users keep their own window
    other = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT}, headers={'X-User-ID': 'calm-user'})
    assert other.status_code == 200


@pytest.mark.integration
def test_generate_candidates_live(client, live_orchestrator):
    live_orchestrator(FakeProvider(flashcards_json()))
    resp = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT})
    assert resp.status_code == 200
    data = resp.json()['data']
    assert len(data['candidates']) == 3
    assert data['generation_metadata']['model_used'] == 'openai/gpt-4o-mini'
    assert data['generation_metadata']['mode'] == 'live'


@pytest.mark.integration
def test_generate_candidates_falls_back_on_garbage(client, live_orchestrator):
    live_orchestrator(FakeProvider('no json here'))
    resp = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT})
    assert resp.status_code == 200
    assert resp.json()['data']['generation_metadata']['model_used'] == 'fallback'


@pytest.mark.integration
def test_generate_candidates_surfaces_exhausted_rate_limit(client, live_orchestrator):
    live_orchestrator(FakeProvider(RateLimitError('slow down', retry_after=30)), threshold=1000, min_request_count=1000)
    resp = client.post('/ai/generate-candidates', json={'text': CELL_BIOLOGY_TEXT})
    assert resp.status_code == 429
    assert resp.headers['Retry-After'] == '30'
    body = resp.json()
    assert body['details'][0]['code'] == 'RATE_LIMIT'
    assert body['retry_after'] == 30


@pytest.mark.integration
def test_generate_proposals_requires_user(client):
    resp = client.post('/flashcards/generate-proposals', json={'topic': 'Cell biology'})
    assert resp.status_code == 401
    assert resp.json()['details'][0]['code'] == 'NO_SESSION'


@pytest.mark.integration
def test_generate_proposals_without_provider(client):
    resp = client.post('/flashcards/generate-proposals', json={'topic': 'Cell biology'}, headers={'X-User-ID': 'u1'})
    assert resp.status_code == 503
    assert resp.json()['details'][0]['code'] == 'AUTHENTICATION'


@pytest.mark.integration
def test_generate_proposals_validates_body(client):
    resp = client.post('/flashcards/generate-proposals', json={'topic': 'ab', 'count': 11}, headers={'X-User-ID': 'u1'})
    assert resp.status_code == 400
    fields = {d['field'] for d in resp.json()['details']}
    assert fields == {'topic', 'count'}


@pytest.mark.integration
def test_generate_proposals_live(client, live_orchestrator):
    provider = FakeProvider(flashcards_json())
    live_orchestrator(provider)
    resp = client.post(
        '/flashcards/generate-proposals',
        json={'topic': 'Cellular respiration', 'difficulty_level': 'hard', 'count': 3, 'category': 'biology'},
        headers={'X-User-ID': 'u1'},
    )
    assert resp.status_code == 200
    data = resp.json()['data']
    assert [f['difficulty'] for f in data['flashcards']] == ['medium', 'easy', 'hard']
    assert data['metadata']['model_used'] == 'openai/gpt-4o-mini'
    assert 'Generate 3 flashcards about: Cellular respiration' in provider.calls[0]['messages'][1]['content']


@pytest.mark.integration
def test_generate_proposals_with_open_circuit(client, live_orchestrator):
    orch = live_orchestrator(FakeProvider(flashcards_json()))
    orch.service.force_circuit_breaker_open('maintenance')
    resp = client.post('/flashcards/generate-proposals', json={'topic': 'Cellular respiration'}, headers={'X-User-ID': 'u1'})
    assert resp.status_code == 503
    assert resp.json()['details'][0]['code'] == 'SERVICE_UNAVAILABLE'
    assert int(resp.headers['Retry-After']) > 0
