import asyncio
import time
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.config import Settings
from essence.core.errors import NotFoundError, StorageError
from essence.db.base import utcnow
from essence.models.job import Job
from essence.services.derivatives import DerivativePipeline, pending_assets
from essence.services.job_events import JobEventHub, publish_job
from essence.services.job_state import JobStatus, RegistrationStatus
from essence.services.replicate_client import ReplicateClient
from essence.services.storage import download_with_retry, extension_for, is_url


class ArtifactFinalizer:
    """
    finalize_job outbox task: re-host the provider artifact in our storage,
    then register the job as a derivative IP asset.

    Both steps are skipped when already done, so the task can be replayed.
    """

    def __init__(
            self,
            *,
            settings: Settings,
            provider: ReplicateClient,
            storage,
            pipeline: DerivativePipeline,
            events: JobEventHub | None = None,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.settings = settings
        self.provider = provider
        self.storage = storage
        self.pipeline = pipeline
        self.events = events
        self._sleep = sleep

    async def finalize(self, db: AsyncSession, job_id: str, last_attempt: bool = False):
        job = await db.get(Job, job_id)
        if not job:
            raise NotFoundError(f'Job "{job_id}" not found')

        if job.status != JobStatus.SUCCEEDED.value:
            logger.info(f'[finalize] job {job_id} is {job.status}, nothing to finalize')
            return

        await self.rehost(db, job)

        if job.registration_status != RegistrationStatus.REGISTERED.value:
            await self.register(db, job, last_attempt)

        job.finalized_at = utcnow()
        await db.commit()
        await publish_job(self.events, job)

    async def register(self, db: AsyncSession, job: Job, last_attempt: bool):
        """
        Waits for pending training assets until the outbox is on its last
        attempt, then registers against whatever parents are registered by now.
        """
        # RegistrationDeferred propagates so the outbox retries later
        result = await self.pipeline.register_derivative(db, job, wait_for_assets=not last_attempt)

        stalled = pending_assets(job)
        if result.skipped and stalled and self.pipeline.registrar.is_configured:
            await self.pipeline.record_failure(
                db,
                job,
                f'{len(stalled)} training asset(s) never finished registering',
            )
            logger.warning(f'[finalize] job {job.id} gave up waiting for {len(stalled)} training asset(s)')

    async def rehost(self, db: AsyncSession, job: Job) -> bool:
        """
        Copies an http(s) output artifact into storage and points
        output_artifact_ref at the copy. On failure the provider URL stays.
        """
        source = job.provider_output_ref or job.output_artifact_ref
        if job.artifact_storage_path or not is_url(source):
            return False

        try:
            data, content_type = await download_with_retry(
                self.provider.download,
                source,
                attempts=self.settings.ARTIFACT_DOWNLOAD_ATTEMPTS,
                sleep=self._sleep,
            )
            ext = extension_for(source, content_type, default='jpg')
            stored = await self.storage.upload(
                f'{job.kind}/{job.id}-{int(time.time() * 1000)}.{ext}',
                data,
                content_type,
            )
        except StorageError as e:
            logger.error(f'[finalize] re-hosting failed for job {job.id}, keeping provider URL: {e}')
            return False

        job.output_artifact_ref = stored.public_url
        job.artifact_storage_path = stored.storage_path
        await db.commit()
        await publish_job(self.events, job)

        logger.info(f'[finalize] job {job.id} artifact re-hosted at {stored.storage_path}')
        return True
