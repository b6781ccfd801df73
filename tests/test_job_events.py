import time

import pytest
from sqlalchemy import create_engine
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from essence.db.base import Base
from essence.db.session import build_engine, build_sessionmaker
from essence.main import create_app
from essence.services.container import build_services
from essence.services.job_events import is_settled


def _snapshot(status, finalized_at=None):
    return {'status': status, 'finalized_at': finalized_at}


@pytest.mark.parametrize('snapshot, settled', [
    (_snapshot('processing'), False),
    (_snapshot('failed'), True),
    (_snapshot('submission_failed'), True),
    (_snapshot('succeeded'), False),
    (_snapshot('succeeded', '2026-01-01T00:00:00'), True),
])
def test_is_settled(snapshot, settled):
    assert is_settled(snapshot) is settled


@pytest.fixture
def live_client(settings, provider, storage, registrar, sleep):
    """App with its lifespan running, so the outbox loop works in the background."""
    sync_engine = create_engine(settings.database_url.replace('+aiosqlite', ''))
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = build_engine(settings.database_url)
    services = build_services(
        settings,
        build_sessionmaker(engine),
        provider=provider,
        storage=storage,
        registrar=registrar,
        sleep=sleep,
    )
    app = create_app(settings=settings, services=services)

    with TestClient(app) as client:
        yield client
        client.portal.call(engine.dispose)


def _wait_for(client, job_id, predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f'/jobs/{job_id}').json()
        if predicate(job):
            return job
        time.sleep(0.05)
    raise AssertionError(f'job {job_id} never reached the expected state: {job}')


def test_events_stream_until_finalized(live_client, provider, storage):
    storage.files['uploads/a.jpg'] = b'jpeg-bytes'
    provider.next_ids = ['abc123']
    provider.downloads['https://provider/result.jpg'] = (b'result-bytes', 'image/jpeg')

    response = live_client.post('/jobs/training', json={
        'parameters': {'trigger_word': 'TOK'},
        'assets': [{'original_filename': 'a.jpg', 'storage_ref': 'uploads/a.jpg', 'registered_asset_id': 'parent-1'}],
    })
    job_id = response.json()['id']
    _wait_for(live_client, job_id, lambda job: job['status'] == 'submitted')

    snapshots = []
    with live_client.websocket_connect(f'/jobs/{job_id}/events') as ws:
        snapshots.append(ws.receive_json())

        live_client.post(
            '/api/training-webhook',
            json={'id': 'abc123', 'status': 'succeeded', 'output': 'https://provider/result.jpg'},
        )

        with pytest.raises(WebSocketDisconnect):
            while True:
                snapshots.append(ws.receive_json())

    assert snapshots[0]['status'] == 'submitted'
    assert any(s['status'] == 'succeeded' and s['finalized_at'] is None for s in snapshots)

    last = snapshots[-1]
    assert last['status'] == 'succeeded'
    assert last['finalized_at'] is not None
    assert last['output_artifact_ref'].startswith(f'https://cdn.test/training/{job_id}-')
    assert last['registration_status'] == 'registered'


def test_events_for_unknown_job_are_refused(live_client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with live_client.websocket_connect('/jobs/does-not-exist/events') as ws:
            ws.receive_json()

    assert exc_info.value.code == 4404


def test_failed_job_closes_the_stream(live_client, provider, storage):
    storage.files['uploads/a.jpg'] = b'jpeg-bytes'
    provider.next_ids = ['abc123']

    job_id = live_client.post('/jobs/training', json={
        'parameters': {'trigger_word': 'TOK'},
        'assets': [{'original_filename': 'a.jpg', 'storage_ref': 'uploads/a.jpg'}],
    }).json()['id']
    _wait_for(live_client, job_id, lambda job: job['status'] == 'submitted')

    with live_client.websocket_connect(f'/jobs/{job_id}/events') as ws:
        assert ws.receive_json()['status'] == 'submitted'
        live_client.post('/api/training-webhook', json={'id': 'abc123', 'status': 'failed', 'error': 'OOM'})

        last = ws.receive_json()
        assert last['status'] == 'failed'
        assert last['error_message'] == 'OOM'
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()
