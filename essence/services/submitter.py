import io
import os
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.config import Settings
from essence.core.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    StorageError,
    SubmissionError,
)
from essence.models.job import Job
from essence.services import job_service
from essence.services.job_events import JobEventHub
from essence.services.job_state import JobKind, JobStatus
from essence.services.outbox import Outbox
from essence.services.replicate_client import ReplicateClient, DEFAULT_EVENTS_FILTER
from essence.services.storage import is_url


@dataclass
class SubmissionResult:
    job_id: str
    status: str
    external_job_id: str | None = None
    error: str | None = None
    skipped: bool = False


class Submitter:
    """
    Turns a pending job into a provider prediction.

    Runs as the submit_job outbox task. Jobs that are no longer pending are
    skipped, so a replayed task never creates a second prediction.
    """

    def __init__(
            self,
            *,
            settings: Settings,
            provider: ReplicateClient,
            storage,
            outbox: Outbox | None = None,
            events: JobEventHub | None = None
    ):
        self.settings = settings
        self.provider = provider
        self.storage = storage
        self.outbox = outbox
        self.events = events

    def callback_url(self, kind: str) -> str:
        return f'{self.settings.PUBLIC_BASE_URL.rstrip("/")}/api/{kind}-webhook'

    async def submit(self, db: AsyncSession, job_id: str) -> SubmissionResult:
        job = await db.get(Job, job_id)
        if not job:
            raise NotFoundError(f'Job "{job_id}" not found')

        if job.status != JobStatus.PENDING.value:
            logger.info(f'[submit] job {job_id} is {job.status}, skipping')
            return SubmissionResult(job.id, job.status, job.external_job_id, skipped=True)

        try:
            if job.kind == JobKind.TRAINING.value:
                await self._prepare_dataset(db, job)
            model, provider_input = await self._build_input(db, job)
        except InvalidInputError as e:
            job = await job_service.mark_invalid_input(db=db, job_id=job_id, message=e.message, events=self.events)
            return SubmissionResult(job.id, job.status, error=e.message)
        except StorageError as e:
            message = f'Failed to prepare training dataset: {e.message}'
            job = await job_service.mark_submission_failed(db=db, job_id=job_id, message=message, events=self.events)
            return SubmissionResult(job.id, job.status, error=message)

        try:
            prediction = await self.provider.create_prediction(
                model=model,
                input=provider_input,
                webhook=self.callback_url(job.kind),
                events_filter=DEFAULT_EVENTS_FILTER,
            )
        except SubmissionError as e:
            job = await job_service.mark_submission_failed(db=db, job_id=job_id, message=e.message, events=self.events)
            return SubmissionResult(job.id, job.status, error=e.message)

        external_job_id = prediction['id']

        try:
            job = await job_service.record_external_submission(
                db=db,
                job_id=job_id,
                external_job_id=external_job_id,
                events=self.events,
            )
        except (ConflictError, SQLAlchemyError) as e:
            logger.error(f'[submit] could not record prediction {external_job_id} for job {job_id}: {e}')
            await db.rollback()
            await self._cancel_quietly(external_job_id)
            message = f'Failed to record submission: {e}'
            job = await job_service.mark_submission_failed(db=db, job_id=job_id, message=message, events=self.events)
            return SubmissionResult(job.id, job.status, error=message)

        await job_service.replay_unmatched_webhooks(
            db=db,
            external_job_id=external_job_id,
            outbox=self.outbox,
            events=self.events,
        )

        return SubmissionResult(job.id, job.status, external_job_id)

    async def _cancel_quietly(self, external_job_id: str):
        try:
            await self.provider.cancel_prediction(external_job_id)
            logger.info(f'[submit] canceled orphaned prediction {external_job_id}')
        except SubmissionError as e:
            logger.warning(f'[submit] cancel of orphaned prediction {external_job_id} failed: {e}')

    async def _build_input(self, db: AsyncSession, job: Job) -> Tuple[str, Dict[str, Any]]:
        params = job.input_parameters or {}

        if job.kind == JobKind.TRAINING.value:
            return self.settings.TRAINING_MODEL, {
                'input_images': params['input_images_url'],
                'trigger_word': params['trigger_word'],
                'captioning': params.get('captioning', 'automatic'),
                'training_steps': params.get('training_steps', 300),
                'mode': params.get('mode', 'style'),
                'lora_rank': params.get('lora_rank', 16),
                'finetune_type': params.get('finetune_type', 'lora'),
            }

        model_job = await db.get(Job, job.model_job_id) if job.model_job_id else None
        if not model_job:
            raise InvalidInputError('Model not found.')
        if model_job.status != JobStatus.SUCCEEDED.value:
            raise InvalidInputError(f'Model is {model_job.status}, only succeeded models can generate.')

        finetune_id = model_job.provider_output_ref or model_job.output_artifact_ref
        trigger_word = (model_job.input_parameters or {}).get('trigger_word')
        if not finetune_id or not trigger_word:
            raise InvalidInputError('Model is missing required data for generation.')

        provider_input = {
            'prompt': f'{params["prompt"]} in the style of {trigger_word}',
            'finetune_id': finetune_id,
            'aspect_ratio': params.get('aspect_ratio', '1:1'),
            'output_format': params.get('output_format', 'jpg'),
            'safety_tolerance': params.get('safety_tolerance', 2),
            'finetune_strength': params.get('finetune_strength', 1.0),
            'image_prompt_strength': params.get('image_prompt_strength', 0.1),
            'raw': params.get('raw', False),
        }
        if params.get('seed') is not None:
            provider_input['seed'] = params['seed']
        if params.get('image_prompt'):
            provider_input['image_prompt'] = params['image_prompt']

        return self.settings.GENERATION_MODEL, provider_input

    async def _prepare_dataset(self, db: AsyncSession, job: Job):
        """
        Zips loose training assets into one archive when no dataset URL was given.
        """
        params = dict(job.input_parameters or {})
        if params.get('input_images_url'):
            return
        if not job.assets:
            raise InvalidInputError('Training job has no input images.')

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as archive:
            for index, asset in enumerate(job.assets, start=1):
                data = await self._read_asset(asset.storage_ref)
                name = os.path.basename(asset.original_filename) or f'{asset.id}.jpg'
                archive.writestr(f'image_{index:03d}_{name}', data)

        stored = await self.storage.upload(f'datasets/{job.id}.zip', buffer.getvalue(), 'application/zip')

        params['input_images_url'] = stored.public_url
        job.input_parameters = params
        await db.commit()

        logger.info(f'[submit] packed {len(job.assets)} asset(s) for job {job.id} into {stored.storage_path}')

    async def _read_asset(self, storage_ref: str) -> bytes:
        if is_url(storage_ref):
            content, _ = await self.provider.download(storage_ref)
            return content
        return await self.storage.read(storage_ref)
