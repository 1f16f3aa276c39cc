import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.mark.integration
def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['service'] == 'cardgen'
    assert 'timestamp' in body
    assert resp.headers['X-Request-ID']


@pytest.mark.integration
def test_ready_with_in_memory_backends(client):
    resp = client.get('/ready')
    assert resp.status_code == 200
    services = resp.json()['services']
    assert services['database'] == 'ok'
    assert services['redis'] == 'disabled'
    assert services['openrouter'].startswith('warn')


@pytest.mark.integration
def test_ready_fails_when_database_is_down(client, monkeypatch):
    from cardgen.flashcards import FlashcardService

    class DownRepo:
        def ping(self):
            return False

    monkeypatch.setattr(FlashcardService, '_instance', FlashcardService(repository=DownRepo()))
    resp = client.get('/ready')
    assert resp.status_code == 503
    assert resp.json()['status'] == 'not ready'


@pytest.mark.integration
def test_openrouter_status(client):
    resp = client.get('/openrouter/status')
    assert resp.status_code == 200
    data = resp.json()['data']
    assert set(data) == {'service', 'circuit_breaker', 'retry', 'cache', 'orchestrator'}
    assert data['service']['configured'] is False
    assert data['orchestrator']['mode'] == 'degraded'
    assert data['orchestrator']['mock_from_start'] is True


@pytest.mark.integration
def test_circuit_breaker_admin_endpoints(client):
    healthy = client.get('/openrouter/health')
    assert healthy.status_code == 200
    assert healthy.headers['X-Health-Status'] == 'healthy'
    assert healthy.json()['circuit_breaker_state'] == 'CLOSED'
    assert set(healthy.json()['checks']) == {'service', 'circuit_breaker', 'api', 'cache'}

    opened = client.post('/openrouter/circuit-breaker/open', json={'reason': 'maintenance'})
    assert opened.status_code == 200
    assert opened.json()['data']['circuit_breaker_state'] == 'OPEN'

    unhealthy = client.get('/openrouter/health')
    assert unhealthy.status_code == 503
    body = unhealthy.json()
    assert body['status'] == 'unhealthy'
    assert body['time_until_next_attempt_ms'] > 0
    assert body['checks']['circuit_breaker']['status'] == 'fail'
    assert body['overall']['details'] == ['circuit_breaker: Circuit breaker is open']

    history = client.get('/openrouter/status').json()['data']['circuit_breaker']['state_change_history']
    assert history[-1]['reason'] == 'maintenance'

    reset = client.post('/openrouter/circuit-breaker/reset')
    assert reset.json()['data']['circuit_breaker_state'] == 'CLOSED'
    assert client.get('/openrouter/health').status_code == 200


@pytest.mark.integration
def test_force_open_without_body(client):
    resp = client.post('/openrouter/circuit-breaker/open')
    assert resp.status_code == 200
    assert resp.json()['data']['is_healthy'] is False
