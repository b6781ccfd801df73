import asyncio
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.config import Settings
from essence.core.errors import ConflictError, EssenceError, RegistrationDeferred
from essence.db.base import utcnow
from essence.models.job import Job
from essence.services.ip_registrar import IPRegistrar
from essence.services.job_events import JobEventHub, publish_job
from essence.services.job_state import JobKind, JobStatus, RegistrationStatus


@dataclass
class RegistrationResult:
    success: bool
    asset_id: str | None = None
    tx_ref: str | None = None
    error: str | None = None
    skipped: bool = False
    parent_asset_ids: List[str] = field(default_factory=list)
    attempts: int = 0


@dataclass
class SweepReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)


def training_metadata(job: Job) -> Dict[str, Any]:
    params = job.input_parameters or {}
    trigger_word = params.get('trigger_word') or f'Model {job.id[:6]}'
    captioning = params.get('captioning') or 'automatic'
    steps = params.get('training_steps') or 300
    image_count = len(job.assets)

    return {
        'title': f'AI Model: {trigger_word}',
        'description': (
            f'AI model trained on {image_count} images. Trigger word: {trigger_word}. '
            f'Generated using {captioning} captioning with {steps} training steps.'
        ),
        'ipType': 'model',
        'attributes': [
            {'trait_type': 'Model Type', 'value': 'AI Training Model'},
            {'trait_type': 'Trigger Word', 'value': trigger_word},
            {'trait_type': 'Training Steps', 'value': str(steps)},
            {'trait_type': 'Captioning', 'value': captioning},
            {'trait_type': 'Training Images Count', 'value': str(image_count)},
            {'trait_type': 'Replicate Job ID', 'value': job.external_job_id or job.id},
        ],
    }


def generation_metadata(job: Job, trigger_word: str | None) -> Dict[str, Any]:
    prompt = (job.input_parameters or {}).get('prompt') or ''
    trigger_word = trigger_word or 'unknown'

    return {
        'title': f'Generated Image: {prompt[:50]}...',
        'description': (
            f'AI-generated image created using the "{trigger_word}" model. '
            f'Prompt: "{prompt}". Generated at {(job.completed_at or utcnow()).isoformat()}.'
        ),
        'ipType': 'image',
        'image': job.output_artifact_ref,
        'attributes': [
            {'trait_type': 'Content Type', 'value': 'AI Generated Image'},
            {'trait_type': 'Model Trigger Word', 'value': trigger_word},
            {'trait_type': 'Generation Prompt', 'value': prompt},
        ],
    }


def pending_assets(job: Job) -> List[str]:
    return [
        asset.id
        for asset in job.assets
        if asset.registration_status == RegistrationStatus.PENDING.value
    ]


class DerivativePipeline:
    """
    Registers a succeeded job's output as a derivative IP asset of its parents.

    Registration outcome lives in the job's registration_* columns only;
    job status and output are never touched here.
    """

    def __init__(
            self,
            *,
            settings: Settings,
            registrar: IPRegistrar,
            events: JobEventHub | None = None,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.settings = settings
        self.registrar = registrar
        self.events = events
        self._sleep = sleep

    async def resolve_parents(self, db: AsyncSession, job: Job, wait_for_assets: bool = False) -> List[str]:
        """
        Explicit parent references win, then the job's registered training
        assets, then (generation) the source model's registered asset.
        """
        if job.parent_references:
            return [ref for ref in job.parent_references if ref]

        if wait_for_assets and pending_assets(job):
            raise RegistrationDeferred(f'Training assets of job "{job.id}" are still registering')

        registered = [
            asset.registration_asset_id
            for asset in job.assets
            if asset.registration_status == RegistrationStatus.REGISTERED.value and asset.registration_asset_id
        ]
        if registered:
            return registered

        if job.kind == JobKind.GENERATION.value and job.model_job_id:
            model = await db.get(Job, job.model_job_id)
            if model and model.registration_status == RegistrationStatus.REGISTERED.value and model.registration_asset_id:
                return [model.registration_asset_id]

        return []

    async def _metadata(self, db: AsyncSession, job: Job) -> Dict[str, Any]:
        if job.kind == JobKind.TRAINING.value:
            return training_metadata(job)

        model = await db.get(Job, job.model_job_id) if job.model_job_id else None
        trigger_word = (model.input_parameters or {}).get('trigger_word') if model else None
        return generation_metadata(job, trigger_word)

    async def register_derivative(
            self,
            db: AsyncSession,
            job: Job,
            *,
            wait_for_assets: bool = False,
            force: bool = False
    ) -> RegistrationResult:
        if job.status != JobStatus.SUCCEEDED.value:
            raise ConflictError(f'Job "{job.id}" is {job.status}, only succeeded jobs can be registered')

        if job.registration_status == RegistrationStatus.REGISTERED.value and not force:
            return RegistrationResult(
                success=True,
                asset_id=job.registration_asset_id,
                tx_ref=job.registration_tx_ref,
                skipped=True,
                parent_asset_ids=list(job.parent_references or []),
            )

        if not self.registrar.is_configured:
            logger.info(f'[derivative] registrar not configured, skipping job {job.id}')
            return RegistrationResult(success=True, skipped=True)

        parents = await self.resolve_parents(db, job, wait_for_assets=wait_for_assets)
        if not parents:
            logger.info(f'[derivative] job {job.id} has no registered parents, skipping')
            return RegistrationResult(success=True, skipped=True)

        metadata = await self._metadata(db, job)
        max_attempts = self.settings.REGISTRATION_MAX_ATTEMPTS

        last_error = None
        for attempt in range(1, max_attempts + 1):
            result = await self.registrar.register(parents, metadata)

            if result.get('success'):
                job.registration_status = RegistrationStatus.REGISTERED.value
                job.registration_asset_id = result['ipId']
                job.registration_tx_ref = result.get('txHash')
                job.registration_failure_reason = None
                job.registration_failed_at = None
                job.parent_references = parents
                await db.commit()
                await publish_job(self.events, job)

                logger.info(f'[derivative] job {job.id} registered as {job.registration_asset_id} (attempt {attempt})')
                return RegistrationResult(
                    success=True,
                    asset_id=job.registration_asset_id,
                    tx_ref=job.registration_tx_ref,
                    parent_asset_ids=parents,
                    attempts=attempt,
                )

            last_error = result.get('error') or 'Unknown registration error'
            logger.warning(f'[derivative] job {job.id} attempt {attempt}/{max_attempts} failed: {last_error}')

            if attempt < max_attempts:
                await self._sleep(attempt * self.settings.REGISTRATION_BACKOFF_SECONDS)

        await self.record_failure(db, job, last_error)

        logger.error(f'[derivative] job {job.id} registration failed after {max_attempts} attempts: {last_error}')
        return RegistrationResult(
            success=False,
            error=last_error,
            parent_asset_ids=parents,
            attempts=max_attempts,
        )

    async def record_failure(self, db: AsyncSession, job: Job, reason: str):
        job.registration_status = RegistrationStatus.FAILED.value
        job.registration_failure_reason = reason
        job.registration_failed_at = utcnow()
        await db.commit()
        await publish_job(self.events, job)

    async def retry_failed_registrations(
            self,
            db: AsyncSession,
            *,
            limit: int | None = None,
            force: bool = False,
            job_id: str | None = None
    ) -> SweepReport:
        """
        Re-attempts registration for succeeded jobs that are not registered yet
        (every succeeded job with force), newest completion first.
        """
        stmt = select(Job).where(Job.status == JobStatus.SUCCEEDED.value)
        if job_id:
            stmt = stmt.where(Job.id == job_id)
        elif not force:
            stmt = stmt.where(Job.registration_status != RegistrationStatus.REGISTERED.value)

        stmt = stmt.order_by(Job.completed_at.desc()).limit(limit or self.settings.RETRY_SWEEP_LIMIT)
        jobs = list((await db.execute(stmt)).scalars().all())

        report = SweepReport()
        logger.info(f'[derivative] retry sweep over {len(jobs)} job(s)')

        for index, job in enumerate(jobs):
            if index:
                await self._sleep(self.settings.RETRY_SWEEP_DELAY_SECONDS)

            try:
                result = await self.register_derivative(db, job, force=force)
            except EssenceError as e:
                result = RegistrationResult(success=False, error=e.message)

            report.processed += 1
            if result.skipped:
                report.skipped += 1
            elif result.success:
                report.succeeded += 1
            else:
                report.failed += 1

            report.results.append({'job_id': job.id, **asdict(result)})

        return report

    async def registration_stats(self, db: AsyncSession) -> Dict[str, Any]:
        result = await db.execute(
            select(Job.registration_status, func.count())
            .where(Job.status == JobStatus.SUCCEEDED.value)
            .group_by(Job.registration_status)
        )
        counts = {status: count for status, count in result.all()}

        registered = counts.get(RegistrationStatus.REGISTERED.value, 0)
        failed = counts.get(RegistrationStatus.FAILED.value, 0)
        pending = counts.get(RegistrationStatus.PENDING.value, 0)
        total = registered + failed + pending

        return {
            'total': total,
            'registered': registered,
            'failed': failed,
            'pending': pending,
            'registration_rate': round(registered / total * 100, 1) if total else 0.0,
        }
