from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.errors import EssenceError
from essence.db.base import utcnow
from essence.models.job import Job
from essence.schemas.job import JobResponse
from essence.schemas.webhook import parse_webhook_event
from essence.services import job_service
from essence.services.job_events import JobEventHub
from essence.services.job_state import is_terminal
from essence.services.outbox import Outbox
from essence.services.replicate_client import ReplicateClient


def is_still_waiting(job: Job, stale_minutes: int, now: datetime | None = None) -> bool:
    """
    Non-terminal job that has been running longer than stale_minutes.
    Informational only, nothing is canceled.
    """
    if is_terminal(job.status):
        return False
    since = job.started_at or job.created_at
    if since is None:
        return False
    now = now or utcnow()
    return now - since > timedelta(minutes=stale_minutes)


def project_job(job: Job, stale_minutes: int, now: datetime | None = None) -> JobResponse:
    return JobResponse.from_job(
        job,
        is_terminal=is_terminal(job.status),
        still_waiting=is_still_waiting(job, stale_minutes, now),
    )


async def get_job_view(
        *,
        db: AsyncSession,
        job_id: str,
        stale_minutes: int = 30,
        provider: ReplicateClient | None = None,
        refresh: bool = False,
        outbox: Outbox | None = None,
        events: JobEventHub | None = None
) -> JobResponse:
    job = await job_service.get_job(db=db, job_id=job_id)

    if refresh and provider is not None and job.external_job_id and not is_terminal(job.status):
        try:
            prediction = await provider.get_prediction(job.external_job_id)
            event = parse_webhook_event(prediction)
            await job_service.apply_webhook_event(db=db, event=event, outbox=outbox, events=events)
            job = await job_service.get_job(db=db, job_id=job_id)
        except EssenceError as e:
            logger.warning(f'[status] refresh of job {job_id} from provider failed: {e.message}')

    return project_job(job, stale_minutes)
