from datetime import timedelta

import pytest

from essence.db.base import utcnow
from essence.schemas.job import TrainingAssetIn
from essence.services import job_service
from essence.services.status_projection import get_job_view, is_still_waiting


pytestmark = pytest.mark.anyio


async def _submitted_job(db, external_job_id='abc123'):
    job = await job_service.create_job(
        db=db,
        kind='training',
        input_parameters={'trigger_word': 'TOK'},
        assets=[TrainingAssetIn(original_filename='a.jpg', storage_ref='uploads/a.jpg')],
    )
    return await job_service.record_external_submission(db=db, job_id=job.id, external_job_id=external_job_id)


async def test_still_waiting_flips_after_threshold(db):
    job = await _submitted_job(db)
    now = utcnow()

    assert not is_still_waiting(job, 30, now=now)
    assert is_still_waiting(job, 30, now=now + timedelta(minutes=31))

    job.started_at = now + timedelta(minutes=20)
    assert not is_still_waiting(job, 30, now=now + timedelta(minutes=31))


async def test_terminal_jobs_are_never_waiting(db):
    job = await _submitted_job(db)
    await job_service.mark_submission_failed(db=db, job_id=job.id, message='boom')

    view = await get_job_view(db=db, job_id=job.id)

    assert view.is_terminal
    assert not is_still_waiting(job, 30, now=utcnow() + timedelta(days=1))


async def test_refresh_applies_provider_state(db, provider):
    job = await _submitted_job(db)
    provider.predictions['abc123'] = {'id': 'abc123', 'status': 'processing', 'logs': 'epoch 1'}

    view = await get_job_view(db=db, job_id=job.id, provider=provider, refresh=True)

    assert view.status == 'processing'
    assert view.logs == 'epoch 1'
    assert not view.is_terminal


async def test_refresh_errors_fall_back_to_stored_state(db, provider):
    job = await _submitted_job(db)

    view = await get_job_view(db=db, job_id=job.id, provider=provider, refresh=True)

    assert view.status == 'submitted'
