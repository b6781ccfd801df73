from dataclasses import dataclass
from datetime import datetime, timezone
from loguru import logger
from typing import Any, Dict, List, Sequence
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.errors import ValidationError, NotFoundError, ConflictError
from essence.db.base import utcnow
from essence.models.job import Job
from essence.models.training_asset import TrainingAsset
from essence.models.unmatched_webhook import UnmatchedWebhook
from essence.schemas.job import (
    TrainingParameters,
    GenerationParameters,
    TrainingAssetIn,
    AssetRegistrationUpdate,
)
from essence.schemas.webhook import (
    WebhookEvent,
    StartingEvent,
    ProcessingEvent,
    SucceededEvent,
    FailedEvent,
    CanceledEvent,
    parse_webhook_event,
    error_text,
    output_reference,
)
from essence.services.job_events import JobEventHub, publish_job
from essence.services.job_state import (
    JobKind,
    JobStatus,
    RegistrationStatus,
    allowed_sources,
    can_transition,
    is_terminal,
)
from essence.services.outbox import Outbox, SUBMIT_JOB, FINALIZE_JOB


NSFW_MESSAGE = 'Error generating image: NSFW content detected.'
INVALID_OUTPUT_MESSAGE = 'Invalid output format received'

_NSFW_MARKERS = ('nsfw', 'content policy', 'safety filter', 'inappropriate content')


@dataclass
class WebhookOutcome:
    # applied | unmatched | unmapped | late | ignored | out_of_order
    action: str
    job_id: str | None = None
    status: str | None = None
    became_succeeded: bool = False


def _format_validation_error(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()) if p != '__root__')
        parts.append(f'{loc}: {err["msg"]}' if loc else err['msg'])
    return '; '.join(parts)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def merge_logs(existing: str | None, incoming: str | None) -> str | None:
    """
    Provider logs are cumulative snapshots. A snapshot that extends what we
    have replaces it, an older snapshot is ignored, anything else is appended.
    """
    if not incoming:
        return existing
    if not existing:
        return incoming
    if incoming.startswith(existing):
        return incoming
    if existing.startswith(incoming) or existing.endswith(incoming):
        return existing
    return f'{existing}\n{incoming}'


def looks_nsfw(logs: str | None) -> bool:
    if not logs:
        return False
    lowered = logs.lower()
    return any(marker in lowered for marker in _NSFW_MARKERS)


async def create_job(
        *,
        db: AsyncSession,
        kind: JobKind | str,
        input_parameters: Dict[str, Any],
        parent_references: Sequence[str] | None = None,
        assets: Sequence[TrainingAssetIn] | None = None,
        outbox: Outbox | None = None
) -> Job:
    """
    Inserts a pending job. Validation failures raise before anything is written.

    With an outbox the submit_job task is committed in the same transaction,
    so a job never sits in pending without someone responsible for it.
    """
    try:
        kind = JobKind(kind)
    except ValueError:
        raise ValidationError(f'Unknown job kind "{kind}"')

    assets = list(assets or [])
    parent_references = [ref for ref in (parent_references or []) if ref]

    model_job_id = None
    try:
        if kind == JobKind.TRAINING:
            params = TrainingParameters.model_validate(input_parameters or {})
        else:
            params = GenerationParameters.model_validate(input_parameters or {})
    except PydanticValidationError as e:
        raise ValidationError(_format_validation_error(e))

    if kind == JobKind.TRAINING:
        if not params.input_images_url and not assets:
            raise ValidationError('At least one input asset or a dataset archive URL is required')
    else:
        if assets:
            raise ValidationError('Generation jobs do not take training assets')
        model_job_id = params.model_job_id
        model = await db.get(Job, model_job_id)
        if not model or model.kind != JobKind.TRAINING.value:
            raise ValidationError(f'Unknown model "{model_job_id}"')

    job = Job(
        kind=kind.value,
        status=JobStatus.PENDING.value,
        input_parameters=params.model_dump(mode='json'),
        model_job_id=model_job_id,
        parent_references=parent_references,
        registration_status=RegistrationStatus.PENDING.value,
    )

    for index, asset in enumerate(assets):
        registered = bool(asset.registered_asset_id)
        job.assets.append(
            TrainingAsset(
                original_filename=asset.original_filename,
                storage_ref=asset.storage_ref,
                content_type=asset.content_type,
                file_size=asset.file_size,
                display_order=index,
                registration_asset_id=asset.registered_asset_id,
                registration_status=(
                    RegistrationStatus.REGISTERED.value if registered else RegistrationStatus.PENDING.value
                ),
            )
        )

    db.add(job)
    await db.flush()

    if outbox is not None:
        outbox.enqueue(db, SUBMIT_JOB, job.id)

    await db.commit()

    if outbox is not None:
        outbox.wake()

    logger.info(f'[jobs] created {kind.value} job {job.id} ({len(assets)} asset(s))')
    return job


async def get_job(*, db: AsyncSession, job_id: str) -> Job:
    job = await db.get(Job, job_id)
    if not job:
        raise NotFoundError(f'Job "{job_id}" not found')
    return job


async def get_job_by_external_id(*, db: AsyncSession, external_job_id: str) -> Job | None:
    result = await db.execute(select(Job).where(Job.external_job_id == external_job_id))
    return result.scalar_one_or_none()


async def list_jobs(
        *,
        db: AsyncSession,
        kind: JobKind | str | None = None,
        include_hidden: bool = False,
        limit: int = 50,
        offset: int = 0
) -> List[Job]:
    stmt = select(Job)

    if kind:
        stmt = stmt.where(Job.kind == JobKind(kind).value)
    if not include_hidden:
        stmt = stmt.where(Job.is_hidden == False)  # noqa: E712

    result = await db.execute(
        stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def _transition(
        db: AsyncSession,
        job: Job,
        target: JobStatus,
        values: Dict[str, Any]
) -> bool:
    """
    Guarded status write: only applies while the row is still in a status
    that may move to `target`. Returns False when another writer got there first.
    """
    sources = [status.value for status in allowed_sources(target)]
    result = await db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status.in_(sources))
        .values(status=target.value, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_external_submission(
        *,
        db: AsyncSession,
        job_id: str,
        external_job_id: str,
        events: JobEventHub | None = None
) -> Job:
    job = await get_job(db=db, job_id=job_id)

    if job.external_job_id == external_job_id:
        return job

    claimed = await db.execute(
        select(Job.id).where(Job.external_job_id == external_job_id, Job.id != job_id)
    )
    other = claimed.scalar_one_or_none()
    if other:
        raise ConflictError(f'External job "{external_job_id}" is already linked to job "{other}"')

    if job.external_job_id is not None:
        raise ConflictError(f'Job "{job_id}" is already linked to external job "{job.external_job_id}"')

    if not can_transition(job.status, JobStatus.SUBMITTED):
        raise ConflictError(f'Job "{job_id}" is {job.status}, cannot record a submission')

    try:
        applied = await _transition(db, job, JobStatus.SUBMITTED, {'external_job_id': external_job_id})
        if not applied:
            await db.rollback()
            raise ConflictError(f'Job "{job_id}" changed status while recording the submission')
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f'External job "{external_job_id}" is already linked to another job')

    await db.refresh(job)
    await publish_job(events, job)

    logger.info(f'[jobs] job {job.id} submitted as {external_job_id}')
    return job


async def _mark_local_failure(
        db: AsyncSession,
        job_id: str,
        target: JobStatus,
        message: str,
        events: JobEventHub | None
) -> Job:
    job = await get_job(db=db, job_id=job_id)

    if not can_transition(job.status, target):
        logger.warning(f'[jobs] job {job_id} is {job.status}, not marking {target.value}: {message}')
        return job

    now = utcnow()
    applied = await _transition(db, job, target, {'error_message': message, 'completed_at': now})
    await db.commit()
    await db.refresh(job)

    if applied:
        logger.warning(f'[jobs] job {job_id} -> {target.value}: {message}')
        await publish_job(events, job)
    return job


async def mark_submission_failed(
        *,
        db: AsyncSession,
        job_id: str,
        message: str,
        events: JobEventHub | None = None
) -> Job:
    return await _mark_local_failure(db, job_id, JobStatus.SUBMISSION_FAILED, message, events)


async def mark_invalid_input(
        *,
        db: AsyncSession,
        job_id: str,
        message: str,
        events: JobEventHub | None = None
) -> Job:
    return await _mark_local_failure(db, job_id, JobStatus.INVALID_INPUT, message, events)


def _plan_transition(job: Job, event: WebhookEvent) -> tuple[JobStatus | None, Dict[str, Any]]:
    """
    Target status and column values for a webhook event, or (None, {}) when
    the event carries no status we understand.
    """
    now = utcnow()
    started_at = job.started_at or _naive_utc(event.started_at) or now
    completed_at = _naive_utc(event.completed_at) or now

    def failed(message: str) -> tuple[JobStatus, Dict[str, Any]]:
        values = {'error_message': message, 'completed_at': completed_at}
        if event.predict_time is not None:
            values['predict_time'] = event.predict_time
        return JobStatus.FAILED, values

    if isinstance(event, StartingEvent):
        return JobStatus.STARTING, {'started_at': started_at}

    if isinstance(event, ProcessingEvent):
        # training jobs keep running through processing errors and warnings
        if job.kind == JobKind.GENERATION.value:
            error = error_text(event.error)
            if error:
                return failed(error)
            if looks_nsfw(event.logs):
                return failed(NSFW_MESSAGE)
        return JobStatus.PROCESSING, {'started_at': started_at}

    if isinstance(event, SucceededEvent):
        ref = output_reference(event.output)
        if ref is None:
            return failed(INVALID_OUTPUT_MESSAGE)
        values = {
            'output_artifact_ref': ref,
            'provider_output_ref': ref,
            'error_message': None,
            'started_at': started_at,
            'completed_at': completed_at,
        }
        if event.predict_time is not None:
            values['predict_time'] = event.predict_time
        return JobStatus.SUCCEEDED, values

    if isinstance(event, FailedEvent):
        return failed(error_text(event.error) or 'Prediction failed')

    if isinstance(event, CanceledEvent):
        return failed(error_text(event.error) or 'Prediction was canceled')

    return None, {}


async def _write_logs(db: AsyncSession, job: Job, logs: str | None):
    await db.execute(
        update(Job)
        .where(Job.id == job.id)
        .values(logs=logs, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(job)


async def apply_webhook_event(
        *,
        db: AsyncSession,
        event: WebhookEvent,
        outbox: Outbox | None = None,
        events: JobEventHub | None = None,
        park_unmatched: bool = True
) -> WebhookOutcome:
    """
    Applies one provider status notification to the job it belongs to.

    Unknown external ids are parked and acknowledged. Terminal jobs only get
    their logs merged. A transition into succeeded enqueues finalize_job
    (artifact re-hosting + derivative registration) in the same commit.
    """
    job = await get_job_by_external_id(db=db, external_job_id=event.id)

    if job is None:
        logger.warning(f'[webhook] no job for external id {event.id} (status={event.status}), parking event')
        if park_unmatched:
            db.add(UnmatchedWebhook(external_job_id=event.id, status=event.status, payload=event.raw))
            await db.commit()
        return WebhookOutcome('unmatched')

    logs = merge_logs(job.logs, event.logs)
    logs_changed = logs != job.logs

    if is_terminal(job.status):
        if logs_changed:
            await _write_logs(db, job, logs)
        logger.info(f'[webhook] job {job.id} already {job.status}, {event.status} event only updates logs')
        return WebhookOutcome('late', job.id, job.status)

    target, values = _plan_transition(job, event)

    if target is None:
        logger.warning(f'[webhook] unrecognised status "{event.status}" for job {job.id}, ignoring')
        if logs_changed:
            await _write_logs(db, job, logs)
        return WebhookOutcome('ignored', job.id, job.status)

    if not can_transition(job.status, target):
        logger.info(f'[webhook] job {job.id} is {job.status}, ignoring out-of-order {target.value}')
        if logs_changed:
            await _write_logs(db, job, logs)
        return WebhookOutcome('out_of_order', job.id, job.status)

    values['logs'] = logs
    applied = await _transition(db, job, target, values)

    if not applied:
        await db.rollback()
        await db.refresh(job)
        logger.info(f'[webhook] job {job.id} moved to {job.status} concurrently, dropping {target.value}')
        return WebhookOutcome('out_of_order', job.id, job.status)

    succeeded = target == JobStatus.SUCCEEDED
    if succeeded and outbox is not None:
        outbox.enqueue(db, FINALIZE_JOB, job.id)

    await db.commit()
    await db.refresh(job)
    await publish_job(events, job)

    if succeeded and outbox is not None:
        outbox.wake()

    logger.info(f'[webhook] job {job.id} -> {target.value}')
    return WebhookOutcome('applied', job.id, target.value, became_succeeded=succeeded)


async def replay_unmatched_webhooks(
        *,
        db: AsyncSession,
        external_job_id: str | None = None,
        outbox: Outbox | None = None,
        events: JobEventHub | None = None
) -> int:
    """
    Re-applies parked webhooks whose external id now belongs to a job.
    Returns the number of events applied.
    """
    stmt = select(UnmatchedWebhook.id).where(UnmatchedWebhook.resolved_at.is_(None))
    if external_job_id:
        stmt = stmt.where(UnmatchedWebhook.external_job_id == external_job_id)

    parked_ids = list((await db.execute(stmt.order_by(UnmatchedWebhook.id))).scalars().all())

    replayed = 0
    for parked_id in parked_ids:
        parked = await db.get(UnmatchedWebhook, parked_id)
        if parked is None:
            continue

        job = await get_job_by_external_id(db=db, external_job_id=parked.external_job_id)
        if job is None:
            continue

        event = parse_webhook_event(parked.payload)
        await apply_webhook_event(db=db, event=event, outbox=outbox, events=events, park_unmatched=False)

        parked = await db.get(UnmatchedWebhook, parked_id, populate_existing=True)
        parked.resolved_at = utcnow()
        await db.commit()
        replayed += 1

    if replayed:
        logger.info(f'[webhook] replayed {replayed} parked event(s)')
    return replayed


async def list_unmatched_webhooks(*, db: AsyncSession, include_resolved: bool = False, limit: int = 100):
    stmt = select(UnmatchedWebhook)
    if not include_resolved:
        stmt = stmt.where(UnmatchedWebhook.resolved_at.is_(None))
    result = await db.execute(stmt.order_by(UnmatchedWebhook.received_at.desc()).limit(limit))
    return list(result.scalars().all())


async def _set_hidden(db: AsyncSession, job_id: str, hidden: bool, events: JobEventHub | None) -> Job:
    job = await get_job(db=db, job_id=job_id)

    job.is_hidden = hidden
    job.hidden_at = utcnow() if hidden else None

    await db.commit()
    await publish_job(events, job)
    return job


async def hide_job(*, db: AsyncSession, job_id: str, events: JobEventHub | None = None) -> Job:
    return await _set_hidden(db, job_id, True, events)


async def unhide_job(*, db: AsyncSession, job_id: str, events: JobEventHub | None = None) -> Job:
    return await _set_hidden(db, job_id, False, events)


async def list_training_assets(*, db: AsyncSession, job_id: str) -> List[TrainingAsset]:
    await get_job(db=db, job_id=job_id)
    result = await db.execute(
        select(TrainingAsset)
        .where(TrainingAsset.job_id == job_id)
        .order_by(TrainingAsset.display_order)
    )
    return list(result.scalars().all())


async def record_asset_registration(
        *,
        db: AsyncSession,
        asset_id: str,
        update_data: AssetRegistrationUpdate
) -> TrainingAsset:
    """
    Stores the result of registering one uploaded image as a parent IP asset.
    """
    asset = await db.get(TrainingAsset, asset_id)
    if not asset:
        raise NotFoundError(f'Training asset "{asset_id}" not found')

    asset.registration_status = update_data.registration_status
    asset.registration_asset_id = update_data.asset_id
    asset.registration_tx_ref = update_data.tx_ref
    asset.registration_failure_reason = update_data.failure_reason

    await db.commit()

    logger.info(f'[assets] asset {asset_id} registration -> {asset.registration_status}')
    return asset
