"""Shared fixtures: a file-backed SQLite database per test and fakes for the
provider, object storage and IP registrar."""

import pytest
from httpx import ASGITransport, AsyncClient

import essence.models  # noqa: F401
from essence.core.config import Settings
from essence.core.errors import StorageError, SubmissionError
from essence.db.base import Base
from essence.db.session import build_engine, build_sessionmaker
from essence.models.job import Job
from essence.services.container import build_services
from essence.services.storage import StoredObject


@pytest.fixture
def anyio_backend():
    return 'asyncio'


class FakeProvider:
    def __init__(self):
        self.created = []
        self.canceled = []
        self.predictions = {}
        self.downloads = {}
        self.next_ids = []
        self.fail_create = None
        self.fail_cancel = False
        self.download_failures = 0

    async def create_prediction(self, *, model, input, webhook=None, events_filter=None):
        if self.fail_create:
            raise SubmissionError(self.fail_create)
        prediction_id = self.next_ids.pop(0) if self.next_ids else f'pred-{len(self.created) + 1}'
        self.created.append({
            'id': prediction_id,
            'model': model,
            'input': input,
            'webhook': webhook,
            'events_filter': events_filter,
        })
        return {'id': prediction_id, 'status': 'starting'}

    async def get_prediction(self, prediction_id):
        if prediction_id not in self.predictions:
            raise SubmissionError(f'Replicate error 404: {prediction_id}')
        return self.predictions[prediction_id]

    async def cancel_prediction(self, prediction_id):
        if self.fail_cancel:
            raise SubmissionError('Replicate error 500: cancel failed')
        self.canceled.append(prediction_id)
        return {'id': prediction_id, 'status': 'canceled'}

    async def download(self, url):
        if self.download_failures:
            self.download_failures -= 1
            raise StorageError(f'Download error 503 for {url}')
        if url not in self.downloads:
            raise StorageError(f'Download error 404 for {url}')
        return self.downloads[url]


class FakeStorage:
    def __init__(self):
        self.files = {}

    async def upload(self, storage_path, data, content_type=None):
        self.files[storage_path] = data
        return StoredObject(public_url=f'https://cdn.test/{storage_path}', storage_path=storage_path)

    async def read(self, storage_path):
        if storage_path not in self.files:
            raise StorageError(f'Failed to read file "{storage_path}"')
        return self.files[storage_path]


class FakeRegistrar:
    def __init__(self, configured=True):
        self.is_configured = configured
        self.calls = []
        # consumed in order, then every call succeeds
        self.responses = []

    async def register(self, parent_asset_ids, metadata):
        self.calls.append({'parents': list(parent_asset_ids), 'metadata': metadata})
        if self.responses:
            return self.responses.pop(0)
        n = len(self.calls)
        return {'success': True, 'ipId': f'ip-{n}', 'txHash': f'0x{n:04x}'}


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f'sqlite+aiosqlite:///{tmp_path / "essence.db"}',
        STORAGE_ROOT=str(tmp_path / 'storage'),
        PUBLIC_BASE_URL='https://essence.test',
        REPLICATE_WEBHOOK_SECRET=None,
        IP_REGISTRAR_URL='https://registrar.test',
        OUTBOX_RETRY_SECONDS=0,
        RETRY_SWEEP_DELAY_SECONDS=0.5,
        REGISTRATION_BACKOFF_SECONDS=2.0,
        LOG_LEVEL='WARNING',
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def services(settings, sessionmaker, provider, storage, registrar, sleep):
    return build_services(
        settings,
        sessionmaker,
        provider=provider,
        storage=storage,
        registrar=registrar,
        sleep=sleep,
    )


@pytest.fixture
async def client(settings, services):
    from essence.main import create_app

    app = create_app(settings=settings, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as client:
        yield client


@pytest.fixture
def load_job(sessionmaker):
    """Reads a job in a fresh session, bypassing any stale identity map."""
    async def _load(job_id):
        async with sessionmaker() as session:
            return await session.get(Job, job_id)
    return _load
