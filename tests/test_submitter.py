import io
import zipfile

import pytest
from sqlalchemy.exc import IntegrityError

from essence.schemas.job import TrainingAssetIn
from essence.schemas.webhook import parse_webhook_event
from essence.services import job_service


pytestmark = pytest.mark.anyio


async def _training_job(db, storage, n=2, **params):
    for i in range(1, n + 1):
        storage.files[f'uploads/img{i}.jpg'] = f'image-{i}'.encode()
    return await job_service.create_job(
        db=db,
        kind='training',
        input_parameters={'trigger_word': 'TOK', **params},
        assets=[
            TrainingAssetIn(original_filename=f'img{i}.jpg', storage_ref=f'uploads/img{i}.jpg')
            for i in range(1, n + 1)
        ],
    )


async def test_submit_training_job_zips_assets_and_links_prediction(db, services, provider, storage, load_job):
    job = await _training_job(db, storage, n=3)
    provider.next_ids = ['abc123']

    result = await services.submitter.submit(db, job.id)

    assert result.external_job_id == 'abc123'
    assert result.status == 'submitted'

    created = provider.created[0]
    assert created['model'] == 'black-forest-labs/flux-pro-trainer'
    assert created['webhook'] == 'https://essence.test/api/training-webhook'
    assert created['events_filter'] == ['start', 'output', 'logs', 'completed']
    assert created['input']['input_images'] == f'https://cdn.test/datasets/{job.id}.zip'
    assert created['input']['trigger_word'] == 'TOK'
    assert created['input']['training_steps'] == 300

    with zipfile.ZipFile(io.BytesIO(storage.files[f'datasets/{job.id}.zip'])) as archive:
        assert archive.namelist() == ['image_001_img1.jpg', 'image_002_img2.jpg', 'image_003_img3.jpg']

    stored = await load_job(job.id)
    assert stored.status == 'submitted'
    assert stored.external_job_id == 'abc123'


async def test_archive_url_is_used_as_is(db, services, provider, storage):
    job = await _training_job(db, storage, input_images_url='https://files.test/dataset.zip')

    await services.submitter.submit(db, job.id)

    assert provider.created[0]['input']['input_images'] == 'https://files.test/dataset.zip'
    assert not any(path.startswith('datasets/') for path in storage.files)


async def test_provider_failure_marks_submission_failed(db, services, provider, storage, load_job):
    job = await _training_job(db, storage)
    provider.fail_create = 'Replicate error 422: invalid input'

    result = await services.submitter.submit(db, job.id)

    assert result.status == 'submission_failed'
    stored = await load_job(job.id)
    assert stored.status == 'submission_failed'
    assert stored.error_message == 'Replicate error 422: invalid input'
    assert stored.external_job_id is None


async def test_missing_asset_bytes_fail_the_submission(db, services, provider, storage, load_job):
    job = await _training_job(db, storage)
    del storage.files['uploads/img2.jpg']

    await services.submitter.submit(db, job.id)

    stored = await load_job(job.id)
    assert stored.status == 'submission_failed'
    assert provider.created == []


async def test_failed_linkage_cancels_the_orphaned_prediction(db, services, provider, storage, load_job, monkeypatch):
    job = await _training_job(db, storage)
    provider.next_ids = ['abc123']

    async def broken_record(**kwargs):
        raise IntegrityError('UPDATE jobs', {}, Exception('database is gone'))

    monkeypatch.setattr(job_service, 'record_external_submission', broken_record)

    result = await services.submitter.submit(db, job.id)

    assert provider.canceled == ['abc123']
    assert result.status == 'submission_failed'
    stored = await load_job(job.id)
    assert stored.status == 'submission_failed'
    assert stored.error_message.startswith('Failed to record submission')


async def test_cancel_failure_is_swallowed(db, services, provider, storage, load_job, monkeypatch):
    job = await _training_job(db, storage)
    provider.fail_cancel = True

    async def broken_record(**kwargs):
        raise IntegrityError('UPDATE jobs', {}, Exception('database is gone'))

    monkeypatch.setattr(job_service, 'record_external_submission', broken_record)

    result = await services.submitter.submit(db, job.id)

    assert result.status == 'submission_failed'


async def test_resubmitting_a_submitted_job_is_skipped(db, services, provider, storage):
    job = await _training_job(db, storage)
    await services.submitter.submit(db, job.id)

    again = await services.submitter.submit(db, job.id)

    assert again.skipped
    assert len(provider.created) == 1


async def _succeeded_model(db, storage, output='ft-model-1'):
    model = await _training_job(db, storage)
    await job_service.record_external_submission(db=db, job_id=model.id, external_job_id='model-pred')
    await job_service.apply_webhook_event(
        db=db, event=parse_webhook_event({'id': 'model-pred', 'status': 'succeeded', 'output': output})
    )
    return model


async def test_generation_prompt_uses_the_model_trigger_word(db, services, provider, storage):
    model = await _succeeded_model(db, storage)
    job = await job_service.create_job(
        db=db,
        kind='generation',
        input_parameters={'model_job_id': model.id, 'prompt': 'a lighthouse', 'seed': 7},
    )

    await services.submitter.submit(db, job.id)

    created = provider.created[-1]
    assert created['model'] == 'black-forest-labs/flux-1.1-pro-ultra-finetuned'
    assert created['webhook'] == 'https://essence.test/api/generation-webhook'
    assert created['input']['prompt'] == 'a lighthouse in the style of TOK'
    assert created['input']['finetune_id'] == 'ft-model-1'
    assert created['input']['seed'] == 7
    assert 'image_prompt' not in created['input']


async def test_generation_against_unfinished_model_is_invalid_input(db, services, provider, storage, load_job):
    model = await _training_job(db, storage)
    job = await job_service.create_job(
        db=db,
        kind='generation',
        input_parameters={'model_job_id': model.id, 'prompt': 'a lighthouse'},
    )

    await services.submitter.submit(db, job.id)

    stored = await load_job(job.id)
    assert stored.status == 'invalid_input'
    assert provider.created == []


async def test_parked_webhooks_are_replayed_after_linkage(db, services, provider, storage, load_job):
    job = await _training_job(db, storage)
    await job_service.apply_webhook_event(
        db=db, event=parse_webhook_event({'id': 'fast-pred', 'status': 'processing', 'logs': 'booting'})
    )
    provider.next_ids = ['fast-pred']

    await services.submitter.submit(db, job.id)

    stored = await load_job(job.id)
    assert stored.status == 'processing'
    assert stored.logs == 'booting'
